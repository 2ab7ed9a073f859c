# dashboard.py
import html
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse

from auth import Unauthorized
from models import MachineStatus
from models import Request as ApiRequest
from router import Router, build_router
from storage import Storage


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(220px,1fr)); gap: 16px; margin-top: 20px; }
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
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.headers.get("x-token") or request.query_params.get("token")


async def _json_body(request: Request):
    # Parsed by hand so a malformed body still reaches the token check first.
    try:
        return await request.json()
    except ValueError:
        return None


def create_app(db_path: Optional[str] = None, router: Optional[Router] = None) -> FastAPI:
    if router is None:
        storage = Storage(db_path or os.environ.get("MACHINECTL_DB", "machines.db"))
        router = build_router(storage)
    storage = router.services.storage
    validator = router.services.validator

    app = FastAPI(title="machinectl")
    app.state.router = router

    def dispatch(request: Request, method: str, path: str, body=None):
        response = router.handle(ApiRequest(method=method, path=path, token=_token(request), body=body))
        return JSONResponse(response.to_dict(), status_code=response.status_code)

    def rejection(request: Request):
        try:
            validator.validate(_token(request))
        except Unauthorized as e:
            return {"statusCode": 401, "machine": None, "message": str(e)}
        return None

    # ---------- Machine API ----------
    @app.post("/machine/request")
    async def request_machine(request: Request):
        body = await _json_body(request)
        return await run_in_threadpool(dispatch, request, "POST", "/machine/request", body)

    @app.get("/machine/{machine_id}")
    def get_machine(request: Request, machine_id: str):
        return dispatch(request, "GET", f"/machine/{machine_id}")

    @app.post("/machine/{machine_id}/start")
    def start_machine(request: Request, machine_id: str):
        return dispatch(request, "POST", f"/machine/{machine_id}/start")

    @app.post("/machine/{machine_id}/release")
    async def release_machine(request: Request, machine_id: str):
        body = await _json_body(request)
        return await run_in_threadpool(dispatch, request, "POST", f"/machine/{machine_id}/release", body)

    # ---------- Overview ----------
    @app.get("/status/json", response_class=JSONResponse)
    def status_json(request: Request):
        denied = rejection(request)
        if denied:
            return JSONResponse(denied, status_code=401)
        counts = storage.status_counts()
        return {
            "machines": {s.value: counts.get(s.value, 0) for s in MachineStatus},
            "cache": router.services.cache.stats.to_dict(),
        }

    @app.get("/", response_class=HTMLResponse)
    def home(request: Request):
        denied = rejection(request)
        if denied:
            return HTMLResponse(page("🔒 Unauthorized", f"<p>{html.escape(denied['message'])}</p>"), status_code=401)

        counts = storage.status_counts()
        cards = '<div class="cards">' + "".join(
            f'<div class="card"><h3>{s.value}</h3><p>{counts.get(s.value, 0)}</p></div>' for s in MachineStatus
        ) + "</div>"

        table_html = """
        <h2>Machines</h2>
        <table>
          <tr><th>ID</th><th>Location</th><th>Status</th><th>Job</th><th>Hold until</th><th>Updated</th></tr>
        """
        machines = storage.list_machines()
        for m in machines:
            table_html += (
                f"<tr><td>{html.escape(m.machine_id)}</td><td>{html.escape(m.location_id)}</td>"
                f"<td>{m.status.value}</td><td>{html.escape(m.current_job_id or '-')}</td>"
                f"<td>{m.hold_expires_at or '-'}</td><td>{m.updated_at or '-'}</td></tr>"
            )
        table_html += "</table>"
        if not machines:
            table_html += "<p class='muted'>No machines provisioned. Use 'machinectl machine add'.</p>"

        return page("📊 Machine Dashboard", cards + table_html)

    return app
