from fastapi.testclient import TestClient

from pdr.api import create_app


def test_health_reports_running_agent(agent):
    app = create_app(agent)
    with TestClient(app) as client:
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"
    assert agent.running is False


def test_endpoints_and_failure_report(agent, listener, scheduler):
    app = create_app(agent)
    with TestClient(app) as client:
        scheduler.poll()

        r = client.get("/endpoints")
        assert r.status_code == 200
        body = r.json()
        assert [e["uri"] for e in body] == ["tcp://10.0.0.1:61616", "tcp://10.0.0.2:61616"]
        assert all(e["state"] == "present" for e in body)
        assert all(e["last_retry_delay_ms"] is None for e in body)

        r = client.post("/endpoints/10.0.0.2/fail")
        assert r.status_code == 200
        assert r.json() == {"address": "10.0.0.2", "uri": "tcp://10.0.0.2:61616", "state": "retrying"}

        r = client.post("/endpoints/10.9.9.9/fail")
        assert r.status_code == 404

        rows = {e["address"]: e for e in client.get("/endpoints").json()}
        assert rows["10.0.0.2"]["connect_failures"] == 1
        assert rows["10.0.0.2"]["last_retry_delay_ms"] == 1000
        assert rows["10.0.0.1"]["last_retry_delay_ms"] is None

    assert listener.uris("remove") == ["tcp://10.0.0.2:61616"]


def test_notifications_use_built_in_recorder_when_agent_has_no_listener(agent, scheduler):
    agent.set_listener(None)
    app = create_app(agent)
    with TestClient(app) as client:
        scheduler.poll()
        client.post("/endpoints/10.0.0.1/fail")

        r = client.get("/notifications", params={"limit": 10})
        assert r.status_code == 200
        kinds = [(n["kind"], n["uri"]) for n in r.json()]
        assert sorted(kinds[:2]) == [("add", "tcp://10.0.0.1:61616"), ("add", "tcp://10.0.0.2:61616")]
        assert kinds[2] == ("remove", "tcp://10.0.0.1:61616")


def test_events_endpoint_lists_journal(agent, scheduler):
    app = create_app(agent)
    with TestClient(app) as client:
        scheduler.poll()
        r = client.get("/events", params={"limit": 50})
        assert r.status_code == 200
        messages = [e["message"] for e in r.json()]
        assert any(m.startswith("Adding service:") for m in messages)
        assert any(m.startswith("Starting discovery agent") for m in messages)

        assert client.get("/events", params={"limit": 0}).status_code == 422
