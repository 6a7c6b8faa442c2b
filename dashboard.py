# dashboard.py
from html import escape

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse

from models import FAILED
from storage import Storage

# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">🏠 Home</a>
        <a href="/failed">🗑 Failed</a>
        <a href="/config">⚙ Config</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _cards(stats) -> str:
    cards = "".join(
        f'<div class="card"><h3>{key.title()}</h3><p>{stats[key]}</p></div>'
        for key in ("waiting", "delayed", "active", "completed", "failed")
    )
    return f'<div class="cards">{cards}</div>'


def create_app(storage=None) -> FastAPI:
    """Status dashboard and polling API over a queue database."""
    db = storage or Storage()
    app = FastAPI(title="Conversion queue")

    # ---------- Home ----------
    @app.get("/", response_class=HTMLResponse)
    def home():
        jobs = db.list_jobs(limit=50)
        table_html = """
        <h2>Recent jobs</h2>
        <table>
          <tr><th>ID</th><th>Type</th><th>Tier</th><th>State</th><th>Attempts</th><th>Priority</th><th>Progress</th></tr>
        """
        for job in jobs:
            job_id = escape(job.id)
            table_html += (f"<tr><td><a href='/job/{job_id}'>{job_id}</a></td><td>{job.conversion_type}</td>"
                           f"<td>{escape(job.user_tier)}</td><td>{job.state}</td>"
                           f"<td>{job.attempts_made}/{job.max_attempts}</td><td>{job.priority}</td>"
                           f"<td>{job.progress}% {escape(job.progress_stage or '')}</td></tr>")
        table_html += "</table>"
        return page("📊 Conversion Queue", _cards(db.get_queue_stats()) + table_html)

    # ---------- Failed ----------
    @app.get("/failed", response_class=HTMLResponse)
    def failed_page():
        jobs = db.list_jobs(state=FAILED)
        body = """
          <h2>Failed jobs</h2>
          <table>
            <tr><th>ID</th><th>Attempts</th><th>Error</th><th>Finished</th></tr>
        """
        if not jobs:
            body += "</table><p class='muted'>No failed jobs.</p>"
        else:
            for job in jobs:
                body += (f"<tr><td><a href='/job/{escape(job.id)}'>{escape(job.id)}</a></td>"
                         f"<td>{job.attempts_made}/{job.max_attempts}</td><td>{escape(job.error or '-')}</td>"
                         f"<td>{job.finished_at or '-'}</td></tr>")
            body += "</table><p class='muted'>Failed jobs are never purged automatically.</p>"
        return page("🗑 Failed Jobs", body)

    # ---------- Config ----------
    @app.get("/config", response_class=HTMLResponse)
    def config_page():
        rows = db.list_config()
        body = """
          <h2>Runtime configuration</h2>
          <table>
            <tr><th>Key</th><th>Value</th><th>Updated</th></tr>
        """
        if not rows:
            body += "</table><p class='muted'>No config entries found.</p>"
        else:
            for r in rows:
                body += f"<tr><td>{escape(r['key'])}</td><td>{escape(r['value'])}</td><td>{r['updated_at']}</td></tr>"
            body += "</table><p class='muted'>Use CLI config set/get to manage values.</p>"
        return page("⚙ Config", body)

    # ---------- Job detail ----------
    @app.get("/job/{job_id}", response_class=HTMLResponse)
    def job_detail(job_id: str):
        job = db.get_job(job_id)
        if not job:
            return HTMLResponse(page("❌ Job not found", f"<p>Job {escape(job_id)} not found.</p>"), status_code=404)

        body = f"""
          <h2>Job {escape(job.id)}</h2>
          <div class="cards">
            <div class="card"><b>State</b><p>{job.state}</p></div>
            <div class="card"><b>Attempts</b><p>{job.attempts_made}/{job.max_attempts}</p></div>
            <div class="card"><b>Priority</b><p>{job.priority} ({escape(job.user_tier)})</p></div>
            <div class="card"><b>Progress</b><p>{job.progress}% {escape(job.progress_stage or '')}</p></div>
          </div>

          <h3>Timestamps</h3>
          <table>
            <tr><th>Enqueued</th><td>{job.enqueued_at}</td></tr>
            <tr><th>Next run</th><td>{job.next_run_at or '-'}</td></tr>
            <tr><th>Started</th><td>{job.started_at or '-'}</td></tr>
            <tr><th>Finished</th><td>{job.finished_at or '-'}</td></tr>
            <tr><th>Lock expires</th><td>{job.lock_expires_at or '-'}</td></tr>
          </table>

          <h3>Error</h3>
          <pre>{escape(job.error or '-')}</pre>
        """
        return page(f"🔎 Job {escape(job.id)}", body)

    # ---------- JSON API ----------
    @app.get("/api/stats", response_class=JSONResponse)
    def stats():
        return db.get_queue_stats()

    @app.get("/api/jobs/{job_id}", response_class=JSONResponse)
    def job_status(job_id: str):
        job = db.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return job.status()

    @app.delete("/api/jobs/{job_id}", response_class=JSONResponse)
    def remove_job(job_id: str):
        if not db.remove_job(job_id):
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return {"removed": job_id}

    return app
