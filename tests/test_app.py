"""Tests for the Flask tracking application."""

import re
from unittest.mock import patch

import pytest

from opentrack.app import create_app
from opentrack.config import Settings
from opentrack.exceptions import StorageError
from opentrack.pixel import TRACKING_PIXEL


def track(client, ip, user_agent, **params):
    return client.get(
        "/api/track",
        query_string=params,
        headers={"User-Agent": user_agent, "X-Forwarded-For": ip},
    )


class TestPixel:
    """Tests for the pixel endpoint."""

    def test_pixel_response(self, client):
        """Test that the pixel is a GIF with no-cache headers."""
        response = track(client, "1.1.1.1", "UA-A", id="abc123")

        assert response.status_code == 200
        assert response.data == TRACKING_PIXEL
        assert response.data.startswith(b"GIF89a")
        assert response.headers["Content-Type"] == "image/gif"
        assert response.headers["Content-Length"] == str(len(TRACKING_PIXEL))
        assert "no-store" in response.headers["Cache-Control"]
        assert "no-cache" in response.headers["Cache-Control"]
        assert response.headers["Pragma"] == "no-cache"
        assert response.headers["Expires"] == "0"

    def test_pixel_without_id(self, app, client):
        """Test that a missing id still gets the pixel but records nothing."""
        response = client.get("/api/track")

        assert response.status_code == 200
        assert response.data == TRACKING_PIXEL
        assert app.db.get_statistics() == []

    def test_pixel_when_recording_fails(self, app, client):
        """Test that a storage failure never changes the pixel response."""
        with patch.object(app.db, "insert_event", side_effect=RuntimeError("disk full")):
            response = track(client, "1.1.1.1", "UA-A", id="abc123")

        assert response.status_code == 200
        assert response.data == TRACKING_PIXEL

    def test_path_pixel_records_open(self, app, client):
        """Test that /pixel/<id>.png serves the pixel and records like /api/track."""
        response = client.get(
            "/pixel/3f2b6c1e-9d4a-4b7e-8c21-5a0f1e2d3c4b.png",
            headers={"User-Agent": "UA-A", "X-Forwarded-For": "1.1.1.1"},
        )

        assert response.status_code == 200
        assert response.data == TRACKING_PIXEL
        assert response.headers["Content-Type"] == "image/gif"
        assert response.headers["Expires"] == "0"
        events = app.db.get_events("3f2b6c1e-9d4a-4b7e-8c21-5a0f1e2d3c4b")
        assert len(events) == 1
        assert events[0].ip == "1.1.1.1"

    def test_path_and_query_pixels_share_history(self, client):
        track(client, "1.1.1.1", "UA-A", id="abc123")
        client.get("/pixel/abc123.png", headers={"User-Agent": "UA-B", "X-Forwarded-For": "2.2.2.2"})

        events = client.get("/api/tracking-data/abc123/events").get_json()

        assert [e["classified_forwarded"] for e in events] == [False, True]

    @pytest.mark.parametrize("tracking_id", ["x" * 65, "bad id!", "<script>"])
    def test_malformed_id_gets_pixel_but_no_event(self, app, client, tracking_id):
        """Test that ids of the wrong shape are served but not recorded."""
        response = track(client, "1.1.1.1", "UA-A", id=tracking_id)

        assert response.status_code == 200
        assert response.data == TRACKING_PIXEL
        assert app.db.get_statistics() == []

    def test_recording_disabled(self, settings):
        settings.recording.enabled = False
        app = create_app(settings)
        try:
            app.test_client().get("/api/track?id=abc123")
            assert app.db.get_events("abc123") == []
        finally:
            app.shutdown()


class TestForwardDetection:
    """End-to-end forward detection through the HTTP surface."""

    def test_second_reader_is_a_forward(self, client):
        """Test that an open from a new IP and user-agent is reported as forwarded."""
        track(client, "1.1.1.1", "UA-A", id="abc123")
        track(client, "2.2.2.2", "UA-B", id="abc123")

        response = client.get("/api/tracking-data/abc123")
        assert response.status_code == 200

        history = response.get_json()["history"]
        assert history["ip"] == "1.1.1.1"
        assert history["classified_forwarded"] is False
        assert len(history["forwarded_children"]) == 1
        child = history["forwarded_children"][0]
        assert child["ip"] == "2.2.2.2"
        assert child["classified_forwarded"] is True
        assert child["event_kind"] == "forward_open"

    def test_explicit_claim_with_same_device(self, app, client):
        """Test that a query-string claim wins over cookie and drift."""
        app.db.create_message("m1", "bob@x.com")
        track(client, "1.1.1.1", "UA-A", id="m1", email="bob@x.com")

        client.get(
            "/api/track",
            query_string={"id": "m1", "forwarded": "alice@x.com"},
            headers={
                "User-Agent": "UA-A",
                "X-Forwarded-For": "1.1.1.1",
                "Cookie": "emailIdentifier=bob@x.com",
            },
        )

        events = client.get("/api/tracking-data/m1/events").get_json()
        assert len(events) == 2
        assert events[0]["classified_forwarded"] is False
        assert events[1]["classified_forwarded"] is True
        assert events[1]["forwarded_by"] == "alice@x.com"

        email = client.get("/api/tracking-data/m1").get_json()["email"]
        assert email["ever_opened"] is True
        assert email["ever_forwarded"] is True

    def test_tracker_created_after_opens(self, client):
        """Test that registering an id after it was opened and forwarded shows both flags."""
        track(client, "1.1.1.1", "UA-A", id="abc123")
        track(client, "2.2.2.2", "UA-B", id="abc123")

        response = client.post("/api/create-tracker", json={
            "recipient": "bob@x.com",
            "trackingId": "abc123",
        })
        assert response.status_code == 201

        email = client.get("/api/emails").get_json()[0]
        assert email["ever_opened"] is True
        assert email["ever_forwarded"] is True
        assert email["open_count"] == 2

    def test_repeat_opens(self, client):
        for _ in range(3):
            track(client, "1.1.1.1", "UA-A", id="abc123")

        events = client.get("/api/tracking-data/abc123/events").get_json()

        assert [e["classified_forwarded"] for e in events] == [False, False, False]

    def test_background_recording(self, settings):
        """Test that queued captures are visible after the worker drains."""
        settings.recording.synchronous = False
        app = create_app(settings)
        client = app.test_client()
        try:
            track(client, "1.1.1.1", "UA-A", id="abc123")
            track(client, "2.2.2.2", "UA-B", id="abc123")
            app.recording_queue.join()

            events = client.get("/api/tracking-data/abc123/events").get_json()
            assert [e["classified_forwarded"] for e in events] == [False, True]
        finally:
            app.shutdown()


class TestQueryEndpoints:
    """Tests for the read API."""

    def test_unknown_tracking_id(self, client):
        assert client.get("/api/tracking-data/nope").status_code == 404
        assert client.get("/api/tracking-data/nope/events").status_code == 404
        assert client.get("/api/tracking-data/nope").get_json() == {
            "error": "Tracking id nope not found"
        }

    def test_registered_but_unopened(self, app, client):
        """Test that a registered message with no events is not a 404."""
        app.db.create_message("m1", "bob@x.com")

        data = client.get("/api/tracking-data/m1").get_json()

        assert data["history"] is None
        assert data["email"]["original_recipient"] == "bob@x.com"
        assert client.get("/api/tracking-data/m1/events").get_json() == []

    def test_statistics(self, client):
        track(client, "1.1.1.1", "UA-A", id="a")
        track(client, "1.1.1.1", "UA-A", id="a")
        track(client, "1.1.1.1", "UA-A", id="b")

        rows = client.get("/api/statistics").get_json()

        assert [row["tracking_id"] for row in rows] == ["b", "a"]
        assert {row["tracking_id"]: row["open_count"] for row in rows} == {"a": 2, "b": 1}

    def test_statistics_empty(self, client):
        assert client.get("/api/statistics").get_json() == []

    def test_list_emails(self, app, client):
        app.db.create_message("m1", "bob@x.com", subject="Hi")
        track(client, "1.1.1.1", "UA-A", id="m1")

        emails = client.get("/api/emails").get_json()

        assert emails[0]["tracking_id"] == "m1"
        assert emails[0]["open_count"] == 1
        assert emails[0]["ever_opened"] is True

    def test_email_summary(self, app, client):
        app.db.create_message("root", "bob@x.com")
        app.db.create_message("child", "carol@x.com", parent_tracking_id="root")
        track(client, "1.1.1.1", "UA-A", id="root")
        track(client, "3.3.3.3", "UA-C", id="child")

        data = client.get("/api/emails/root/summary").get_json()

        assert data["open_count"] == 1
        assert data["forward_count"] == 1
        assert data["forwarded_emails"][0]["email"]["tracking_id"] == "child"
        assert len(data["forwarded_email_events"]["child"]) == 1

    def test_email_summary_errors(self, app, client):
        app.db.create_message("root", "bob@x.com")

        assert client.get("/api/emails/nope/summary").status_code == 404
        assert client.get("/api/emails/root/summary?depth=-1").status_code == 400

    def test_email_summary_non_integer_depth(self, app, client):
        app.db.create_message("root", "bob@x.com")

        response = client.get("/api/emails/root/summary?depth=abc")

        assert response.status_code == 400
        assert response.get_json() == {"error": "depth must be an integer"}
        assert client.get("/api/emails/root/summary?depth=2").status_code == 200

    def test_storage_failure_is_a_json_500(self, app, client):
        """Test that a failing store on the read path becomes a JSON 500."""
        with patch.object(app.db, "get_statistics", side_effect=StorageError("Event log is not open")):
            response = client.get("/api/statistics")

        assert response.status_code == 500
        assert response.get_json() == {"error": "Event log is not open"}

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.get_json() == {"status": "healthy"}


class TestCreateTracker:
    """Tests for tracker registration."""

    def test_generate_tracking_id(self, client):
        first = client.get("/api/generate-tracking-id").get_json()["trackingId"]
        second = client.get("/api/generate-tracking-id").get_json()["trackingId"]

        assert re.fullmatch(r"[0-9a-f]{32}", first)
        assert first != second

    def test_create_tracker(self, client):
        """Test that a tracker is registered and its pixel markup returned."""
        response = client.post("/api/create-tracker", json={
            "recipient": "bob@x.com",
            "subject": "Quarterly report",
        })

        assert response.status_code == 201
        data = response.get_json()
        assert re.fullmatch(r"[0-9a-f]{32}", data["trackingId"])
        assert data["trackingUrl"].startswith("http://localhost/api/track?id=")
        assert "email=bob%40x.com" in data["trackingUrl"]
        assert data["trackingHtml"].startswith("<img src=")
        assert data["email"]["original_recipient"] == "bob@x.com"
        assert data["email"]["subject"] == "Quarterly report"

    def test_create_with_chosen_id_and_parent(self, app, client):
        response = client.post("/api/create-tracker", json={
            "recipient": "carol@x.com",
            "trackingId": "fwd-1",
            "parentTrackingId": "root",
        })

        assert response.status_code == 201
        assert app.db.get_message("fwd-1").parent_tracking_id == "root"

    def test_duplicate_id(self, client):
        body = {"recipient": "bob@x.com", "trackingId": "dup"}

        assert client.post("/api/create-tracker", json=body).status_code == 201
        response = client.post("/api/create-tracker", json=body)

        assert response.status_code == 409
        assert "already exists" in response.get_json()["error"]

    @pytest.mark.parametrize("body", [
        {},
        {"recipient": "not-an-email"},
        {"recipient": "bob@x.com", "trackingId": "bad id!"},
        {"recipient": "bob@x.com", "parentTrackingId": "../etc"},
        {"recipient": "bob@x.com", "subject": 42},
    ])
    def test_invalid_body(self, client, body):
        response = client.post("/api/create-tracker", json=body)

        assert response.status_code == 400
        assert "error" in response.get_json()

    def test_non_json_body(self, client):
        response = client.post("/api/create-tracker", data="recipient=bob", content_type="text/plain")

        assert response.status_code == 400

    def test_base_url_setting(self, settings):
        settings.server.base_url = "https://track.acme.io/"
        app = create_app(settings)
        try:
            data = app.test_client().post(
                "/api/create-tracker", json={"recipient": "bob@x.com"}
            ).get_json()
            assert data["trackingUrl"].startswith("https://track.acme.io/api/track?id=")
        finally:
            app.shutdown()


class TestClick:
    """Tests for the click redirect."""

    def test_click_redirects_and_records(self, app, client):
        response = client.get(
            "/api/click",
            query_string={"id": "abc123", "url": "https://acme.io/offer"},
        )

        assert response.status_code == 302
        assert response.headers["Location"] == "https://acme.io/offer"
        events = app.db.get_events("abc123")
        assert events[0].event_kind.value == "click"

    @pytest.mark.parametrize("url", [None, "javascript:alert(1)", "/relative", "ftp://acme.io/file"])
    def test_click_rejects_bad_urls(self, client, url):
        params = {"id": "abc123"}
        if url is not None:
            params["url"] = url

        assert client.get("/api/click", query_string=params).status_code == 400

    def test_click_with_malformed_id_redirects_without_recording(self, app, client):
        response = client.get(
            "/api/click",
            query_string={"id": "x" * 65, "url": "https://acme.io/offer"},
        )

        assert response.status_code == 302
        assert app.db.get_statistics() == []

    def test_click_redirects_when_recording_fails(self, app, client):
        with patch.object(app.db, "insert_event", side_effect=RuntimeError("disk full")):
            response = client.get(
                "/api/click",
                query_string={"id": "abc123", "url": "https://acme.io/offer"},
            )

        assert response.status_code == 302


def test_default_settings_do_not_share_state(tmp_path):
    """Test that two apps on different stores are independent."""
    first = create_app(Settings(
        database={"path": str(tmp_path / "one.db")},
        geo={"enabled": False},
        recording={"synchronous": True},
    ))
    second = create_app(Settings(
        database={"path": str(tmp_path / "two.db")},
        geo={"enabled": False},
        recording={"synchronous": True},
    ))
    try:
        first.test_client().get("/api/track?id=abc123")
        assert second.db.get_events("abc123") == []
    finally:
        first.shutdown()
        second.shutdown()
