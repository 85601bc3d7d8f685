import threading
import time
from concurrent.futures import ThreadPoolExecutor

from fastapi.testclient import TestClient

from proposal_lifecycle.api.main import app
from proposal_lifecycle.api.routers.proposals import get_proposal_lifecycle_service


def _create(client: TestClient, **overrides) -> dict:
    payload = {"client_id": 7, "product": "Gold Plan", "monthly_value": "250.00", "origin": "APP"}
    payload.update(overrides)
    response = client.post("/v1/proposals", json=payload, headers={"X-Actor-Id": "17"})
    assert response.status_code == 201
    return response.json()


def test_create_get_and_audit_proposal():
    with TestClient(app) as client:
        created = _create(client)

        assert created["status"] == "DRAFT"
        assert created["version"] == 1
        assert created["monthly_value"] == "250.00"

        fetched = client.get(f"/v1/proposals/{created['proposal_id']}")
        assert fetched.status_code == 200
        assert fetched.json() == created

        audit = client.get(f"/v1/proposals/{created['proposal_id']}/audit").json()
        assert audit["proposal_id"] == created["proposal_id"]
        assert [item["event_kind"] for item in audit["items"]] == ["CREATED"]
        assert audit["items"][0]["actor"] == "user:17"


def test_concrete_lifecycle_over_http():
    with TestClient(app) as client:
        proposal_id = _create(client)["proposal_id"]

        submitted = client.post(f"/v1/proposals/{proposal_id}/submit").json()
        assert (submitted["status"], submitted["version"]) == ("SUBMITTED", 2)
        approved = client.post(f"/v1/proposals/{proposal_id}/approve").json()
        assert (approved["status"], approved["version"]) == ("APPROVED", 3)

        cancel = client.post(f"/v1/proposals/{proposal_id}/cancel")
        assert cancel.status_code == 422
        assert cancel.json()["detail"]["code"] == "TERMINAL_STATE"

        stale = client.patch(
            f"/v1/proposals/{proposal_id}",
            json={"expected_version": 1, "product": "Other"},
        )
        assert stale.status_code == 409
        assert stale.json()["detail"] == {
            "code": "STALE_VERSION",
            "message": "Proposal was changed by another request. Reload it and try again.",
            "context": {"proposal_id": proposal_id, "expected_version": 1, "current_version": 3},
        }

        assert client.get(f"/v1/proposals/{proposal_id}").json()["version"] == 3


def test_update_and_invalid_transition():
    with TestClient(app) as client:
        proposal_id = _create(client)["proposal_id"]

        updated = client.patch(
            f"/v1/proposals/{proposal_id}",
            json={"expected_version": 1, "monthly_value": "99.90"},
            headers={"X-Actor-Id": "3"},
        )
        assert updated.status_code == 200
        assert updated.json()["version"] == 2
        assert updated.json()["monthly_value"] == "99.90"

        reject = client.post(f"/v1/proposals/{proposal_id}/reject")
        assert reject.status_code == 422
        assert reject.json()["detail"]["code"] == "INVALID_TRANSITION"

        audit = client.get(f"/v1/proposals/{proposal_id}/audit").json()["items"]
        assert audit[-1]["event_kind"] == "UPDATED_FIELDS"
        assert audit[-1]["payload"] == {"monthly_value": "99.90"}
        assert audit[-1]["actor"] == "user:3"


def test_request_validation_rejects_bad_payloads():
    with TestClient(app) as client:
        assert client.post(
            "/v1/proposals",
            json={"client_id": 1, "product": "", "monthly_value": "1.00"},
        ).status_code == 422
        assert client.post(
            "/v1/proposals",
            json={"client_id": 1, "product": "x", "monthly_value": "-1"},
        ).status_code == 422
        assert client.post(
            "/v1/proposals",
            json={"client_id": 1, "product": "x" * 101, "monthly_value": "1"},
        ).status_code == 422

        proposal_id = _create(client)["proposal_id"]
        assert client.patch(
            f"/v1/proposals/{proposal_id}", json={"expected_version": 0, "product": "y"}
        ).status_code == 422
        assert client.patch(f"/v1/proposals/{proposal_id}", json={}).status_code == 422


def test_missing_proposal_returns_404():
    with TestClient(app) as client:
        response = client.get("/v1/proposals/pp_missing")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "PROPOSAL_NOT_FOUND"
        assert client.post("/v1/proposals/pp_missing/submit").status_code == 404
        assert client.get("/v1/proposals/pp_missing/audit").status_code == 404


def test_delete_hides_proposal_but_keeps_audit():
    with TestClient(app) as client:
        proposal_id = _create(client)["proposal_id"]

        deleted = client.delete(f"/v1/proposals/{proposal_id}")
        assert deleted.status_code == 200
        assert deleted.json()["version"] == 2
        assert deleted.json()["deleted_at"] is not None

        assert client.get(f"/v1/proposals/{proposal_id}").status_code == 404
        assert client.delete(f"/v1/proposals/{proposal_id}").status_code == 404
        audit = client.get(f"/v1/proposals/{proposal_id}/audit").json()["items"]
        assert [item["event_kind"] for item in audit] == ["CREATED", "DELETED_LOGICAL"]


def test_search_proposals():
    with TestClient(app) as client:
        low = _create(client, client_id=1, monthly_value="10.00")
        high = _create(client, client_id=1, monthly_value="90.00")
        _create(client, client_id=2, monthly_value="50.00")

        response = client.get(
            "/v1/proposals",
            params={"client_id": 1, "sort": "monthly_value", "direction": "asc"},
        )
        assert response.status_code == 200
        assert [item["proposal_id"] for item in response.json()["items"]] == [
            low["proposal_id"],
            high["proposal_id"],
        ]

        page = client.get("/v1/proposals", params={"limit": 2, "status": "draft"}).json()
        assert len(page["items"]) == 2
        assert page["next_cursor"] == page["items"][-1]["proposal_id"]

        assert client.get("/v1/proposals", params={"limit": 500}).status_code == 422


def test_idempotent_create_replays_first_response():
    payload = {"client_id": 5, "product": "Plan", "monthly_value": "12.00"}
    with TestClient(app) as client:
        first = client.post(
            "/v1/proposals", json=payload, headers={"Idempotency-Key": "create-001"}
        )
        replay = client.post(
            "/v1/proposals", json=payload, headers={"Idempotency-Key": "create-001"}
        )
        conflict = client.post(
            "/v1/proposals",
            json={**payload, "product": "Different"},
            headers={"Idempotency-Key": "create-001"},
        )
        fresh = client.post("/v1/proposals", json=payload)

        assert first.status_code == 201
        assert "X-Idempotency-Replayed" not in first.headers
        assert replay.status_code == 201
        assert replay.headers["X-Idempotency-Replayed"] == "true"
        assert replay.json() == first.json()
        assert conflict.status_code == 409
        assert conflict.json()["detail"]["code"] == "IDEMPOTENCY_KEY_CONFLICT"
        assert conflict.json()["detail"]["context"] == {"idempotency_key": "create-001"}
        assert fresh.json()["proposal_id"] != first.json()["proposal_id"]
        assert len(client.get("/v1/proposals").json()["items"]) == 2


def test_concurrent_creates_with_same_key_execute_once(monkeypatch):
    payload = {"client_id": 5, "product": "Plan", "monthly_value": "12.00"}
    barrier = threading.Barrier(2)
    calls = []

    with TestClient(app) as client:
        service = get_proposal_lifecycle_service()
        original_create = service.create

        def _slow_create(**kwargs):
            calls.append(kwargs["client_id"])
            time.sleep(0.2)
            return original_create(**kwargs)

        monkeypatch.setattr(service, "create", _slow_create)

        def _post(_: int):
            barrier.wait()
            return client.post(
                "/v1/proposals", json=payload, headers={"Idempotency-Key": "create-race"}
            )

        with ThreadPoolExecutor(max_workers=2) as pool:
            responses = list(pool.map(_post, range(2)))

        assert [response.status_code for response in responses] == [201, 201]
        assert len({response.json()["proposal_id"] for response in responses}) == 1
        assert sorted(
            response.headers.get("X-Idempotency-Replayed", "false") for response in responses
        ) == ["false", "true"]
        assert calls == [5]
        assert len(client.get("/v1/proposals").json()["items"]) == 1


def test_failed_create_frees_the_idempotency_key(monkeypatch):
    payload = {"client_id": 5, "product": "Plan", "monthly_value": "12.00"}

    with TestClient(app, raise_server_exceptions=False) as client:
        service = get_proposal_lifecycle_service()
        original_create = service.create
        failures = [RuntimeError("store unavailable")]

        def _flaky_create(**kwargs):
            if failures:
                raise failures.pop()
            return original_create(**kwargs)

        monkeypatch.setattr(service, "create", _flaky_create)

        failed = client.post("/v1/proposals", json=payload, headers={"Idempotency-Key": "k-retry"})
        retried = client.post("/v1/proposals", json=payload, headers={"Idempotency-Key": "k-retry"})

        assert failed.status_code == 500
        assert retried.status_code == 201
        assert "X-Idempotency-Replayed" not in retried.headers
