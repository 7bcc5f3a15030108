import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from conftest import auth_headers
from songmint.models import Profile, Song


@pytest.fixture
def headers():
    return auth_headers("u1", "u1@example.com")


@pytest.fixture
def song(db_session: Session, test_user):
    song = Song(
        id="song-1",
        user_id="u1",
        title="Happy Birthday Mum",
        status="completed",
        questionnaire_data={"genres": ["folk", "pop"]},
        audio_url="https://cdn.songmint.test/song-1-a.mp3",
        backup_audio_url="https://cdn.songmint.test/song-1-b.mp3",
        mureka_task_id="task-42",
        mureka_data={"state": "succeeded"},
    )
    db_session.add(song)
    db_session.commit()
    return song


class TestContactSupport:

    def test_request_reaches_support_inbox(self, test_client: TestClient, db_session: Session, song, notifier,
                                           headers):
        profile = db_session.get(Profile, "u1")
        profile.credits_remaining = 4
        profile.full_name = "Una User"
        db_session.commit()

        payload = {"subject": "Billing question", "message": "Line one\nLine two"}

        response = test_client.post("/support/contact", json=payload, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Support request sent"}
        [email] = notifier.sent
        assert email["to"] == "support@songmint.test"
        assert email["reply_to"] == "u1@example.com"
        assert email["subject"] == "Support Request: Billing question"
        assert "Una User" in email["html"]
        assert ">4</td>" in email["html"]
        assert "Happy Birthday Mum" in email["html"]
        assert "Line one<br>Line two" in email["html"]

    def test_user_input_is_escaped(self, test_client: TestClient, test_user, notifier, headers):
        test_client.post("/support/contact", json={"subject": "Hi", "message": "<script>alert(1)</script>"},
                         headers=headers)

        html = notifier.sent[0]["html"]
        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_requires_authentication(self, test_client: TestClient, notifier):
        response = test_client.post("/support/contact", json={"subject": "Hi", "message": "Hello"})

        assert response.status_code == 401
        assert notifier.sent == []

    @pytest.mark.parametrize("payload", [{"subject": "", "message": "Hello"}, {"subject": "Hi"}])
    def test_subject_and_message_required(self, test_client: TestClient, test_user, headers, payload):
        assert test_client.post("/support/contact", json=payload, headers=headers).status_code == 422

    def test_send_failure(self, test_client: TestClient, test_user, notifier, headers):
        notifier.fail = True

        response = test_client.post("/support/contact", json={"subject": "Hi", "message": "Hello"}, headers=headers)

        assert response.status_code == 502


class TestReportIssue:

    def test_report_includes_song_details(self, test_client: TestClient, song, notifier, headers):
        response = test_client.post(
            "/support/report-issue",
            json={"songId": "song-1", "songUrl": "https://songmint.test/create/generating?id=song-1",
                  "issueDescription": "The second version cuts off"},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        [email] = notifier.sent
        assert email["to"] == "support@songmint.test"
        assert email["reply_to"] == "u1@example.com"
        assert email["subject"] == "Song Issue Report - User: u1@example.com - Song: song-1"
        html = email["html"]
        assert "https://cdn.songmint.test/song-1-b.mp3" in html
        assert "folk, pop" in html
        assert "task-42" in html
        assert "The second version cuts off" in html
        assert "Mureka API Response" in html

    def test_song_of_another_user(self, test_client: TestClient, db_session: Session, test_user, notifier, headers):
        db_session.add(Profile(id="u2", email="u2@example.com", credits_remaining=0))
        db_session.add(Song(id="s-other", user_id="u2", title="Not mine", questionnaire_data={}))
        db_session.commit()

        response = test_client.post("/support/report-issue", json={"songId": "s-other", "issueDescription": "Broken"},
                                    headers=headers)

        assert response.status_code == 404
        assert notifier.sent == []

    def test_unknown_song(self, test_client: TestClient, test_user, headers):
        response = test_client.post("/support/report-issue", json={"songId": "missing", "issueDescription": "Broken"},
                                    headers=headers)

        assert response.status_code == 404

    def test_description_required(self, test_client: TestClient, song, headers):
        response = test_client.post("/support/report-issue", json={"songId": "song-1"}, headers=headers)

        assert response.status_code == 422
