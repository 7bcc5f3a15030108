from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from conftest import auth_headers, reload
from songmint.models import CreditTransaction, Profile, Song

QUESTIONNAIRE = {"recipient": "Mum", "occasion": "birthday", "genre": "folk", "mood": "warm"}


@pytest.fixture
def headers():
    return auth_headers("u1", "u1@example.com")


@pytest.fixture
def funded_user(db_session: Session, test_user):
    test_user.credits_remaining = 2
    db_session.commit()
    return test_user


class TestSongs:

    def test_create_song_spends_one_credit(self, test_client: TestClient, db_session: Session, funded_user, headers):
        response = test_client.post("/songs", json={"title": "Happy Birthday Mum", "questionnaire_data": QUESTIONNAIRE},
                                    headers=headers)

        assert response.status_code == 201
        song = response.json()
        assert song["status"] == "pending"
        assert song["questionnaire_data"] == QUESTIONNAIRE
        assert reload(db_session, Profile, "u1").credits_remaining == 1

        tx = db_session.query(CreditTransaction).one()
        assert tx.operation_type == "song_creation"
        assert tx.payment_reference == song["id"]
        assert tx.amount == -1

    def test_create_song_without_credits(self, test_client: TestClient, db_session: Session, test_user, headers):
        response = test_client.post("/songs", json={"title": "Nope", "questionnaire_data": QUESTIONNAIRE},
                                    headers=headers)

        assert response.status_code == 402
        assert db_session.query(Song).count() == 0

    def test_create_song_without_profile(self, test_client: TestClient, headers):
        response = test_client.post("/songs", json={"title": "Nope", "questionnaire_data": QUESTIONNAIRE},
                                    headers=headers)

        assert response.status_code == 404

    def test_failed_song_insert_refunds_credit(self, test_client: TestClient, db_session: Session, funded_user,
                                               headers):
        db_session.add(Song(id="s-taken", user_id="u1", title="Existing", questionnaire_data={}))
        db_session.commit()

        with patch("songmint.routers.songs._uuid", return_value="s-taken"):
            response = test_client.post("/songs", json={"title": "Clash", "questionnaire_data": QUESTIONNAIRE},
                                        headers=headers)

        assert response.status_code == 500
        assert reload(db_session, Profile, "u1").credits_remaining == 2
        transactions = db_session.query(CreditTransaction).filter_by(payment_reference="s-taken")
        operations = sorted((tx.operation_type, tx.amount) for tx in transactions)
        assert operations == [("song_creation", -1), ("song_creation_refund", 1)]
        assert db_session.query(Song).filter_by(title="Clash").count() == 0

    def test_create_song_validates_title(self, test_client: TestClient, funded_user, headers):
        response = test_client.post("/songs", json={"title": "", "questionnaire_data": QUESTIONNAIRE}, headers=headers)

        assert response.status_code == 422

    def test_list_only_own_songs(self, test_client: TestClient, db_session: Session, funded_user, headers):
        db_session.add(Profile(id="u2", email="u2@example.com", credits_remaining=0))
        db_session.add(Song(id="s-other", user_id="u2", title="Not mine", questionnaire_data={}))
        db_session.commit()
        test_client.post("/songs", json={"title": "Mine", "questionnaire_data": QUESTIONNAIRE}, headers=headers)

        response = test_client.get("/songs", headers=headers)

        assert response.status_code == 200
        assert [s["title"] for s in response.json()["songs"]] == ["Mine"]

    def test_get_song_of_another_user(self, test_client: TestClient, db_session: Session, test_user, headers):
        db_session.add(Profile(id="u2", email="u2@example.com", credits_remaining=0))
        db_session.add(Song(id="s-other", user_id="u2", title="Not mine", questionnaire_data={}))
        db_session.commit()

        assert test_client.get("/songs/s-other", headers=headers).status_code == 404
        assert test_client.delete("/songs/s-other", headers=headers).status_code == 404

    def test_delete_own_song(self, test_client: TestClient, funded_user, headers):
        song_id = test_client.post(
            "/songs", json={"title": "Temporary", "questionnaire_data": QUESTIONNAIRE}, headers=headers
        ).json()["id"]

        assert test_client.get(f"/songs/{song_id}", headers=headers).status_code == 200
        assert test_client.delete(f"/songs/{song_id}", headers=headers).status_code == 204
        assert test_client.get(f"/songs/{song_id}", headers=headers).status_code == 404


class TestCredits:

    def test_balance(self, test_client: TestClient, funded_user, headers):
        response = test_client.get("/credits/balance", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"credits": 2}

    def test_admin_grant(self, test_client: TestClient, db_session: Session, test_user):
        response = test_client.post(
            "/credits/u1/add", json={"credits": 25, "reason": "support refund"}, headers={"X-Admin-Key": "admin-test-key"}
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "oldCredits": 0, "newCredits": 25, "change": 25}
        tx = db_session.query(CreditTransaction).one()
        assert tx.operation_type == "admin_grant"
        assert tx.context == {"reason": "support refund"}

    @pytest.mark.parametrize("key", [None, "wrong-key"])
    def test_admin_grant_requires_key(self, test_client: TestClient, test_user, key):
        headers = {"X-Admin-Key": key} if key else {}

        response = test_client.post("/credits/u1/add", json={"credits": 5}, headers=headers)

        assert response.status_code == 401

    def test_admin_grant_limit(self, test_client: TestClient, test_user):
        response = test_client.post("/credits/u1/add", json={"credits": 1001}, headers={"X-Admin-Key": "admin-test-key"})

        assert response.status_code == 400

    def test_admin_grant_unknown_user(self, test_client: TestClient):
        response = test_client.post("/credits/ghost/add", json={"credits": 5}, headers={"X-Admin-Key": "admin-test-key"})

        assert response.status_code == 404


class TestOps:

    def test_healthz(self, test_client: TestClient):
        assert test_client.get("/healthz").json() == {"status": "ok"}

    def test_health(self, test_client: TestClient):
        assert test_client.get("/ops/health").json()["status"] == "healthy"

    def test_readyz(self, test_client: TestClient):
        response = test_client.get("/ops/readyz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"]["database"]["status"] == "healthy"
        assert "redis" not in body["checks"]

    def test_metrics(self, test_client: TestClient, test_user):
        response = test_client.get("/ops/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "songmint_profiles_total 1" in response.text
        assert "songmint_stripe_events_dead_letter 0" in response.text
        assert "songmint_security_events 0" in response.text
