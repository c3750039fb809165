import uuid

from discrecovery.models.notification import Notification, NotificationType


def _seed(session, profile, count=3):
    notes = [
        Notification(
            user_id=profile.id,
            type=NotificationType.DISC_FOUND,
            title="Your disc was found!",
            body="@finder found Destroyer",
            data={"disc_id": str(uuid.uuid4())},
        )
        for _ in range(count)
    ]
    session.add_all(notes)
    session.commit()
    return [n.id for n in notes]


def test_list_and_count(client, session, auth_headers, owner, finder):
    _seed(session, owner)
    _seed(session, finder, count=1)

    body = client.get("/notifications/", headers=auth_headers(owner)).json()
    assert len(body["notifications"]) == 3
    assert body["notifications"][0]["data"]["disc_id"]

    assert client.get("/notifications/count", headers=auth_headers(owner)).json() == {"count": 3}


def test_mark_read_only_own(client, session, auth_headers, owner, finder):
    ids = _seed(session, owner)

    foreign = client.post(f"/notifications/{ids[0]}/mark-read", headers=auth_headers(finder))
    assert foreign.status_code == 404

    assert client.post(f"/notifications/{ids[0]}/mark-read", headers=auth_headers(owner)).json() == {"ok": True}
    assert client.get("/notifications/count", headers=auth_headers(owner)).json() == {"count": 2}

    unread = client.get("/notifications/?unread_only=true", headers=auth_headers(owner)).json()
    assert len(unread["notifications"]) == 2


def test_mark_all_read(client, session, auth_headers, owner):
    _seed(session, owner)

    client.post("/notifications/mark-all-read", headers=auth_headers(owner))

    assert client.get("/notifications/count", headers=auth_headers(owner)).json() == {"count": 0}


def test_dismiss_hides_notification(client, session, auth_headers, owner):
    ids = _seed(session, owner, count=2)

    client.post(f"/notifications/{ids[1]}/dismiss", headers=auth_headers(owner))

    listed = client.get("/notifications/", headers=auth_headers(owner)).json()["notifications"]
    assert [n["id"] for n in listed] == [str(ids[0])]


def test_transition_notifications_show_up(client, auth_headers, disc, owner, finder):
    client.post("/recoveries/report-found", json={"qr_code": "ABC123"}, headers=auth_headers(finder))

    listed = client.get("/notifications/", headers=auth_headers(owner)).json()["notifications"]

    assert [n["type"] for n in listed] == ["disc_found"]
    assert listed[0]["title"] == "Your disc was found!"
