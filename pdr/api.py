from __future__ import annotations

from fastapi import FastAPI, HTTPException, Query

from . import events
from .agent import DiscoveryAgent, RecordingListener
from .api_models import EndpointOut, EventOut, FailureReportOut, NotificationOut


def create_app(agent: DiscoveryAgent | None = None, recorder: RecordingListener | None = None) -> FastAPI:
    """HTTP view of one discovery agent.

    Without an explicit agent, one is built from the environment on startup.
    """
    app = FastAPI(title="Peer Discovery Reconciler")
    recorder = recorder or RecordingListener(maxlen=500)
    state: dict[str, DiscoveryAgent | None] = {"agent": agent}

    def _agent() -> DiscoveryAgent:
        a = state["agent"]
        if a is None:
            raise HTTPException(status_code=503, detail="Discovery agent is not running.")
        return a

    @app.on_event("startup")
    def startup() -> None:
        events.init_db()
        a = state["agent"]
        if a is None:
            a = DiscoveryAgent.from_settings(listener=recorder)
            state["agent"] = a
        elif a.listener is None:
            a.set_listener(recorder)
        a.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        a = state["agent"]
        if a is not None:
            a.stop()

    @app.get("/health")
    def health() -> dict[str, str]:
        a = state["agent"]
        return {"status": "healthy" if a is not None and a.running else "stopped"}

    @app.get("/endpoints", response_model=list[EndpointOut])
    def list_endpoints() -> list[EndpointOut]:
        return [
            EndpointOut(
                address=v.address,
                uri=v.uri,
                state=v.state,
                connect_failures=v.connect_failures,
                reconnect_delay_ms=v.reconnect_delay_ms,
                last_retry_delay_ms=v.last_retry_delay_ms,
            )
            for v in _agent().snapshot()
        ]

    @app.post("/endpoints/{address}/fail", response_model=FailureReportOut)
    def report_failure(address: str) -> FailureReportOut:
        a = _agent()
        handle = a.lookup(address)
        if handle is None:
            raise HTTPException(status_code=404, detail=f"Endpoint '{address}' is not tracked.")
        a.report_failure(handle)
        return FailureReportOut(address=handle.address, uri=handle.uri, state=handle.state)

    @app.get("/notifications", response_model=list[NotificationOut])
    def list_notifications(limit: int = Query(100, ge=1, le=500)) -> list[NotificationOut]:
        items = recorder.notifications()[-limit:]
        return [NotificationOut(kind=kind, uri=h.uri) for kind, h in items]

    @app.get("/events", response_model=list[EventOut])
    def list_events(limit: int = Query(100, ge=1, le=1000)) -> list[EventOut]:
        return [EventOut(**e) for e in events.latest_events(limit)]

    return app


app = create_app()
