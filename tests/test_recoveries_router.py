import asyncio
import io
import time
import uuid

import httpx
from botocore.exceptions import ClientError
from PIL import Image
from sqlalchemy.exc import SQLAlchemyError

from discrecovery.main import app
from discrecovery.routers import recoveries as recoveries_router
from discrecovery.routers.recoveries import get_push_channel
from discrecovery.services import transitions
from discrecovery.services.errors import StorageFault

from conftest import FakePushChannel


def _png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (32, 32), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


def _report(client, auth_headers, finder, **body):
    body = body or {"qr_code": "ABC123"}
    response = client.post("/recoveries/report-found", json=body, headers=auth_headers(finder))
    assert response.status_code == 200, response.text
    return response.json()


def test_root(client):
    assert client.get("/").json() == {"status": "ok"}


def test_requires_bearer_token(client):
    assert client.get("/recoveries/").status_code in (401, 403)

    response = client.get("/recoveries/", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_report_found_over_http(client, auth_headers, disc, owner, finder):
    event = _report(client, auth_headers, finder, qr_code="abc123", message="On hole 4")

    assert event["status"] == "found"
    assert event["disc_id"] == str(disc.id)
    assert event["owner_id"] == str(owner.id)


def test_owner_reporting_own_disc_is_forbidden(client, auth_headers, disc, owner):
    response = client.post("/recoveries/report-found", json={"disc_id": str(disc.id)}, headers=auth_headers(owner))

    assert response.status_code == 403
    assert response.json() == {
        "error": "forbidden",
        "detail": "Your role cannot perform report_found",
        "reason": "wrong_role",
    }


def test_second_report_conflicts(client, auth_headers, disc, finder, stranger):
    _report(client, auth_headers, finder)

    response = client.post("/recoveries/report-found", json={"qr_code": "ABC123"}, headers=auth_headers(stranger))

    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


def test_stranger_gets_forbidden_not_not_found(client, auth_headers, disc, finder, stranger):
    event = _report(client, auth_headers, finder)

    response = client.get(f"/recoveries/{event['id']}", headers=auth_headers(stranger))
    assert response.status_code == 403
    assert response.json()["reason"] == "not_participant"

    missing = client.get(f"/recoveries/{uuid.uuid4()}", headers=auth_headers(stranger))
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"


def test_invalid_coordinates_are_rejected(client, auth_headers, disc, owner, finder):
    event = _report(client, auth_headers, finder)

    response = client.post(
        f"/recoveries/{event['id']}/proposals",
        json={"location_name": "Park", "proposed_datetime": "2024-06-01T10:00:00Z", "latitude": 123, "longitude": 0},
        headers=auth_headers(owner),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_input"


def test_meetup_flow_over_http(client, auth_headers, disc, owner, finder):
    event = _report(client, auth_headers, finder)

    proposal = client.post(
        f"/recoveries/{event['id']}/proposals",
        json={"location_name": "Library", "proposed_datetime": "2024-06-01T10:00:00Z"},
        headers=auth_headers(finder),
    ).json()
    assert proposal["status"] == "pending"

    declined = client.post(
        f"/recoveries/proposals/{proposal['id']}/decline",
        json={"reason": "Closed on Saturdays"},
        headers=auth_headers(owner),
    )
    assert declined.json()["status"] == "declined"

    again = client.post(
        f"/recoveries/{event['id']}/proposals",
        json={"location_name": "Park", "proposed_datetime": "2024-06-01T12:00:00Z"},
        headers=auth_headers(finder),
    ).json()

    accepted = client.post(f"/recoveries/proposals/{again['id']}/accept", headers=auth_headers(owner))
    assert accepted.json()["status"] == "accepted"

    stale = client.post(f"/recoveries/proposals/{proposal['id']}/accept", headers=auth_headers(owner))
    assert stale.status_code == 409
    assert stale.json()["error"] == "precondition_failed"

    done = client.post(f"/recoveries/{event['id']}/complete", headers=auth_headers(owner))
    assert done.json()["status"] == "recovered"

    details = client.get(f"/recoveries/{event['id']}", headers=auth_headers(finder)).json()
    assert details["role"] == "finder"
    assert details["disc"]["name"] == "Destroyer"
    assert [p["status"] for p in details["proposals"]] == ["completed", "declined"]


def test_drop_off_upload_and_retrieve(monkeypatch, client, auth_headers, disc, owner, finder):
    uploads = []
    monkeypatch.setattr(
        recoveries_router,
        "upload_to_s3",
        lambda buffer, ext, rid, name: uploads.append((ext, rid, name)) or f"drop-offs/{rid}/photo.{ext}",
    )
    monkeypatch.setattr(recoveries_router, "generate_signed_url", lambda key: f"https://signed.test/{key}")

    event = _report(client, auth_headers, finder)

    response = client.post(
        f"/recoveries/{event['id']}/drop-off",
        data={"latitude": "45.52", "longitude": "-122.68", "location_notes": "Behind basket 9"},
        files={"image": ("disc.png", _png_bytes(), "image/png")},
        headers=auth_headers(finder),
    )
    assert response.status_code == 200, response.text

    drop_off = response.json()
    assert drop_off["photo"].startswith("https://signed.test/drop-offs/")
    assert uploads and uploads[0][2] == "disc.png"

    details = client.get(f"/recoveries/{event['id']}", headers=auth_headers(owner)).json()
    assert details["status"] == "dropped_off"
    assert details["drop_off"]["location_notes"] == "Behind basket 9"

    retrieved = client.post(f"/recoveries/{event['id']}/retrieved", headers=auth_headers(owner))
    assert retrieved.json()["status"] == "recovered"


def _drop_off(client, auth_headers, recovery_event_id, profile):
    return client.post(
        f"/recoveries/{recovery_event_id}/drop-off",
        data={"latitude": "45.52", "longitude": "-122.68"},
        files={"image": ("disc.png", _png_bytes(), "image/png")},
        headers=auth_headers(profile),
    )


def test_refused_drop_off_stores_no_photo(monkeypatch, client, auth_headers, disc, owner, finder, stranger):
    uploads = []
    monkeypatch.setattr(recoveries_router, "upload_to_s3", lambda *args: uploads.append(args) or "drop-offs/x.webp")

    event = _report(client, auth_headers, finder)

    as_owner = _drop_off(client, auth_headers, event["id"], owner)
    assert as_owner.status_code == 403
    assert as_owner.json()["reason"] == "wrong_role"

    as_stranger = _drop_off(client, auth_headers, event["id"], stranger)
    assert as_stranger.status_code == 403
    assert as_stranger.json()["reason"] == "not_participant"

    missing = _drop_off(client, auth_headers, uuid.uuid4(), finder)
    assert missing.status_code == 404

    assert uploads == []


def test_drop_off_upload_failure_is_storage_fault(monkeypatch, client, auth_headers, disc, owner, finder):
    def _unavailable(*args):
        raise ClientError({"Error": {"Code": "ServiceUnavailable", "Message": "down"}}, "PutObject")

    monkeypatch.setattr(recoveries_router, "upload_to_s3", _unavailable)

    event = _report(client, auth_headers, finder)

    response = _drop_off(client, auth_headers, event["id"], finder)

    assert response.status_code == 503
    assert response.json()["error"] == "storage_fault"

    details = client.get(f"/recoveries/{event['id']}", headers=auth_headers(owner)).json()
    assert details["status"] == "found"
    assert details["drop_off"] is None


def test_failed_drop_off_deletes_uploaded_photo(monkeypatch, client, auth_headers, disc, owner, finder):
    deleted = []
    monkeypatch.setattr(recoveries_router, "upload_to_s3", lambda *args: "drop-offs/orphan.webp")
    monkeypatch.setattr(recoveries_router, "delete_s3_object", deleted.append)

    def _fault(*args, **kwargs):
        raise StorageFault("create_drop_off")

    monkeypatch.setattr(transitions, "create_drop_off", _fault)

    event = _report(client, auth_headers, finder)

    response = _drop_off(client, auth_headers, event["id"], finder)

    assert response.status_code == 503
    assert deleted == ["drop-offs/orphan.webp"]


def test_drop_off_rejects_bad_form(client, auth_headers, disc, finder):
    event = _report(client, auth_headers, finder)

    response = client.post(
        f"/recoveries/{event['id']}/drop-off",
        data={"latitude": "north", "longitude": "-122.68"},
        files={"image": ("disc.png", _png_bytes(), "image/png")},
        headers=auth_headers(finder),
    )
    assert response.status_code == 400

    response = client.post(
        f"/recoveries/{event['id']}/drop-off",
        data={"latitude": "45.5", "longitude": "-122.68"},
        files={"image": ("notes.txt", b"not an image", "text/plain")},
        headers=auth_headers(finder),
    )
    assert response.status_code == 400


def test_storage_fault_maps_to_503(monkeypatch, client, auth_headers, disc, owner, finder):
    event = _report(client, auth_headers, finder)

    def _boom(*args, **kwargs):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(transitions, "_swap_owner", _boom)

    response = client.post(f"/recoveries/{event['id']}/abandon", headers=auth_headers(owner))

    assert response.status_code == 503
    assert response.json()["error"] == "storage_fault"

    details = client.get(f"/recoveries/{event['id']}", headers=auth_headers(owner)).json()
    assert details["status"] == "found"


def test_abandon_and_claim_over_http(client, auth_headers, disc, owner, finder, stranger):
    event = _report(client, auth_headers, finder)

    abandoned = client.post(f"/recoveries/{event['id']}/abandon", headers=auth_headers(owner))
    assert abandoned.json()["status"] == "abandoned"

    claimed = client.post(f"/discs/{disc.id}/claim", headers=auth_headers(stranger))
    assert claimed.status_code == 200
    assert claimed.json()["owner_id"] == str(stranger.id)

    again = client.post(f"/discs/{disc.id}/claim", headers=auth_headers(finder))
    assert again.status_code == 409

    mine = client.get("/discs/mine", headers=auth_headers(stranger)).json()
    assert [d["id"] for d in mine["discs"]] == [str(disc.id)]


def test_list_recoveries(client, auth_headers, disc, owner, finder):
    event = _report(client, auth_headers, finder)

    as_owner = client.get("/recoveries/", headers=auth_headers(owner)).json()
    assert [r["id"] for r in as_owner["recoveries"]] == [event["id"]]

    as_finder = client.get("/recoveries/?role=finder", headers=auth_headers(finder)).json()
    assert as_finder["recoveries"][0]["disc"]["name"] == "Destroyer"

    bad = client.get("/recoveries/?role=judge", headers=auth_headers(finder))
    assert bad.status_code == 400


def test_slow_push_does_not_hold_up_other_requests(client, auth_headers, disc, owner, finder):
    event = _report(client, auth_headers, finder)

    slow_channel = FakePushChannel(delay=1.0)
    app.dependency_overrides[get_push_channel] = lambda: slow_channel

    async def _run():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as async_client:
            proposing = asyncio.create_task(
                async_client.post(
                    f"/recoveries/{event['id']}/proposals",
                    json={"location_name": "Park", "proposed_datetime": "2024-06-01T10:00:00Z"},
                    headers=auth_headers(owner),
                )
            )
            assert await asyncio.to_thread(slow_channel.started.wait, 5)

            started = time.perf_counter()
            listed = await async_client.get("/recoveries/?role=finder", headers=auth_headers(finder))
            elapsed = time.perf_counter() - started

            return await proposing, listed, elapsed

    proposed, listed, elapsed = asyncio.run(_run())

    assert listed.status_code == 200
    assert elapsed < 0.5
    assert proposed.status_code == 200
    assert [p["to"] for p in slow_channel.sent] == ["ExponentPushToken[test]"]
