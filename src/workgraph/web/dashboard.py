"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>workgraph</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --open: #8b949e; --in-progress: #58a6ff; --done: #3fb950; --blocked: #d29922;
    --failed: #f85149; --abandoned: #6e7681; --pending-review: #a371f7;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 960px; margin: 0 auto; padding: 24px 16px; }

  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  header button { background: var(--surface); color: var(--text-muted); border: 1px solid var(--border);
                  padding: 4px 10px; border-radius: 4px; cursor: pointer; font-size: 12px; }

  .summary { display: flex; gap: 16px; align-items: center; margin-bottom: 24px; flex-wrap: wrap; }
  .stat { display: flex; align-items: center; gap: 6px; font-size: 14px; }
  .stat .dot { width: 10px; height: 10px; border-radius: 50%; display: inline-block; }
  .progress-bar { flex: 1; min-width: 120px; height: 8px; background: var(--surface);
                  border-radius: 4px; overflow: hidden; border: 1px solid var(--border); }
  .progress-bar .fill { height: 100%; background: var(--done); transition: width 0.3s; }
  .progress-pct { font-size: 13px; color: var(--text-muted); min-width: 40px; }

  .panel { background: var(--surface); border: 1px solid var(--border);
           border-radius: 8px; padding: 16px; margin-bottom: 20px; }
  .panel h2 { font-size: 14px; margin-bottom: 8px; }
  .panel .meta { font-size: 13px; color: var(--text-muted); }
  code { background: var(--bg); padding: 1px 5px; border-radius: 3px; font-size: 12px; }

  .task-list { display: flex; flex-direction: column; gap: 2px; }
  .task-card { background: var(--surface); border: 1px solid var(--border);
               border-radius: 8px; padding: 12px 16px; }
  .task-card.ready { border-left: 3px solid var(--done); }
  .task-header { display: flex; align-items: center; gap: 10px; }
  .badge { display: inline-block; padding: 2px 10px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; letter-spacing: 0.5px; background: var(--bg); }
  .task-title { font-weight: 600; font-size: 14px; }
  .task-id { font-size: 12px; color: var(--text-dim); font-family: monospace; }
  .task-details { margin-top: 6px; font-size: 13px; color: var(--text-muted); display: flex;
                  flex-direction: column; gap: 3px; }

  .empty { text-align: center; padding: 48px; color: var(--text-muted); }
  .empty h3 { margin-bottom: 8px; }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>workgraph</h1>
    <button onclick="loadDashboard()">Refresh</button>
  </header>
  <div id="content"><div class="empty"><h3>Loading...</h3></div></div>
</div>

<script>
const STATUSES = ['open', 'in-progress', 'blocked', 'pending-review', 'done', 'failed', 'abandoned'];
let refreshTimer = null;

async function fetchJSON(path) {
  const res = await fetch(path);
  if (!res.ok) return null;
  return res.json();
}

async function loadDashboard() {
  const content = document.getElementById('content');
  const [summary, tasks, ready, critical, agents] = await Promise.all([
    fetchJSON('/api/summary'),
    fetchJSON('/api/tasks'),
    fetchJSON('/api/ready'),
    fetchJSON('/api/critical-path'),
    fetchJSON('/api/agents'),
  ]);

  if (!summary) {
    content.innerHTML = '<div class="empty"><h3>No workgraph found</h3><p>Run <code>wg init</code> first.</p></div>';
    return;
  }

  let html = '<div class="summary">';
  for (const s of STATUSES) {
    if (!summary.counts[s]) continue;
    html += `<span class="stat"><span class="dot" style="background:var(--${s})"></span> ${summary.counts[s]} ${s}</span>`;
  }
  html += `<div class="progress-bar"><div class="fill" style="width:${summary.progress_pct}%"></div></div>
    <span class="progress-pct">${summary.progress_pct}%</span></div>`;

  if (critical && critical.path.length > 0) {
    html += `<div class="panel"><h2>Critical path (${critical.total_hours}h)</h2>
      <div class="meta">${critical.path.map(id => `<code>${esc(id)}</code>`).join(' &rarr; ')}</div></div>`;
  }

  const alive = (agents || []).filter(a => a.status === 'running' || a.status === 'stopping');
  if (alive.length > 0) {
    html += '<div class="panel"><h2>Agents</h2>';
    for (const a of alive) {
      html += `<div class="meta"><code>${esc(a.id)}</code> ${esc(a.status)} on <code>${esc(a.task_id)}</code> (pid ${a.pid}, ${esc(a.executor)})</div>`;
    }
    html += '</div>';
  }

  const readyIds = new Set((ready || []).map(t => t.id));
  if (!tasks || tasks.length === 0) {
    html += '<div class="empty"><h3>No tasks yet</h3><p>Create tasks with <code>wg add</code></p></div>';
  } else {
    html += '<div class="task-list">';
    for (const task of tasks) html += renderTask(task, readyIds.has(task.id));
    html += '</div>';
  }
  content.innerHTML = html;
}

function renderTask(task, isReady) {
  let details = '';
  if (task.description) details += `<div>${esc(task.description)}</div>`;
  if (task.assigned) details += `<div>Assigned: <code>${esc(task.assigned)}</code></div>`;
  if (task.blocked_by && task.blocked_by.length > 0) {
    details += `<div>Blocked by: ${task.blocked_by.map(d => `<code>${esc(d)}</code>`).join(', ')}</div>`;
  }
  if (task.loop_iteration) details += `<div>Loop iteration ${task.loop_iteration}</div>`;
  if (task.paused) details += '<div>Paused</div>';

  return `<div class="task-card${isReady ? ' ready' : ''}">
    <div class="task-header">
      <span class="badge" style="color:var(--${task.status})">${esc(task.status)}</span>
      <span class="task-title">${esc(task.title)}</span>
      <span class="task-id">${esc(task.id)}</span>
    </div>
    ${details ? `<div class="task-details">${details}</div>` : ''}
  </div>`;
}

function esc(s) {
  if (!s) return '';
  const d = document.createElement('div');
  d.textContent = s;
  return d.innerHTML;
}

function startAutoRefresh() {
  if (refreshTimer) clearInterval(refreshTimer);
  refreshTimer = setInterval(loadDashboard, 10000);
}

loadDashboard();
startAutoRefresh();
</script>
</body>
</html>"""
