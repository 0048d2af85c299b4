"""
REST API tests for users, self-registration and session events.
"""

from project_hub.security import verify_password


def auth(user_id):
    return {"X-User-Id": str(user_id)}


class TestUserEndpoints:

    def test_create_user_hashes_password(self, client, temp_db):
        response = client.post("/api/users", json={
            "name": "Ada", "email": "Ada@Example.com", "password": "s3cret", "role": "manager",
        })
        assert response.status_code == 201
        user = response.json()["data"]
        assert user["email"] == "ada@example.com"
        assert user["role"] == "manager"
        assert "password_hash" not in user

        stored = temp_db.get_user_by_email("ada@example.com", include_password_hash=True)
        assert stored["password_hash"] != "s3cret"
        assert verify_password("s3cret", stored["password_hash"])

    def test_duplicate_email_rejected(self, client, make_user):
        make_user(email="taken@example.com")
        response = client.post("/api/users", json={"name": "B", "email": "TAKEN@example.com", "password": "x"})
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Email already exists"}

    def test_invalid_email_and_missing_password(self, client):
        response = client.post("/api/users", json={"name": "B", "email": "nope", "password": "x"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid email address"
        assert client.post("/api/users", json={"name": "B", "email": "b@example.com"}).status_code == 400

    def test_list_users_with_counts(self, client, temp_db, make_user):
        ada = make_user("Ada", role="admin")
        make_user("Bob")
        project_id = temp_db.create_project({"name": "Alpha", "owner_id": ada})
        temp_db.create_task({"project_id": project_id, "title": "T", "assignee_id": ada})

        users = client.get("/api/users", params={"role": "admin"}).json()["data"]
        assert len(users) == 1
        assert users[0]["project_count"] == 1
        assert users[0]["task_count"] == 1
        assert all("password_hash" not in u for u in users)

    def test_update_user_partial_and_email_uniqueness(self, client, temp_db, make_user):
        ada = make_user("Ada", email="ada@example.com")
        make_user("Bob", email="bob@example.com")

        response = client.put(f"/api/users/{ada}", json={"department": "Research"})
        assert response.status_code == 200
        assert response.json()["data"]["department"] == "Research"
        assert response.json()["data"]["name"] == "Ada"

        response = client.put(f"/api/users/{ada}", json={"email": "bob@example.com"})
        assert response.status_code == 400

        # Keeping one's own e-mail is fine
        assert client.put(f"/api/users/{ada}", json={"email": "ada@example.com"}).status_code == 200
        assert client.put("/api/users/999", json={"name": "Ghost"}).status_code == 404

    def test_password_change_is_audited_without_hash(self, client, temp_db, make_user):
        ada = make_user("Ada", email="ada@example.com")

        response = client.put(f"/api/users/{ada}", json={"password": "new-password"})
        assert response.status_code == 200

        stored = temp_db.get_user_by_email("ada@example.com", include_password_hash=True)
        assert verify_password("new-password", stored["password_hash"])

        entries, total = temp_db.list_activity(entity_type="user", action="update")
        assert total == 1
        assert entries[0]["metadata"]["password_changed"] is True
        assert "password_hash" not in (entries[0]["old_values"] or {})
        assert "password_hash" not in (entries[0]["new_values"] or {})

    def test_update_rejects_null_for_required_columns(self, client, temp_db, make_user):
        ada = make_user("Ada", role="manager")
        for field in ("name", "email", "role", "password"):
            response = client.put(f"/api/users/{ada}", json={field: None})
            assert response.status_code == 400, field
            assert response.json()["success"] is False
            assert response.json()["error"].lower() == f"{field} cannot be null"

        user = temp_db.get_user(ada)
        assert user["role"] == "manager"
        assert user["name"] == "Ada"

    def test_delete_user(self, client, temp_db, make_user):
        user = make_user("Temp")
        assert client.delete(f"/api/users/{user}").status_code == 200
        assert client.get(f"/api/users/{user}").status_code == 404
        assert client.delete(f"/api/users/{user}").status_code == 404

        entries, _ = temp_db.list_activity(action="delete")
        assert entries[0]["old_values"]["name"] == "Temp"


class TestRegistration:

    def test_register_forces_member_role(self, client, temp_db):
        response = client.post("/api/auth/register", json={
            "name": "Eve", "email": "eve@example.com", "password": "longenough", "role": "admin",
        })
        assert response.status_code == 201
        assert response.json()["data"]["role"] == "member"

        entries, _ = temp_db.list_activity(action="register")
        assert entries[0]["user_name"] == "Eve"

    def test_register_short_password(self, client):
        response = client.post("/api/auth/register", json={
            "name": "Eve", "email": "eve@example.com", "password": "12345",
        })
        assert response.status_code == 400
        assert response.json()["error"] == "Password must be at least 6 characters"

    def test_register_duplicate(self, client, make_user):
        make_user(email="eve@example.com")
        response = client.post("/api/auth/register", json={
            "name": "Eve", "email": "eve@example.com", "password": "longenough",
        })
        assert response.status_code == 400


class TestSessionEvents:

    def test_login_recorded_with_client_details(self, client, temp_db, make_user):
        user = make_user("Ada")
        response = client.post("/api/auth/events", json={"event": "login"},
                               headers={**auth(user), "User-Agent": "pytest-agent",
                                        "X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
        assert response.status_code == 200

        entry = temp_db.get_activity(response.json()["data"]["id"])
        assert entry["action"] == "login"
        assert entry["user_id"] == str(user)
        assert entry["ip_address"] == "203.0.113.9"
        assert entry["user_agent"] == "pytest-agent"

    def test_session_event_requires_caller(self, client):
        assert client.post("/api/auth/events", json={"event": "logout"}).status_code == 401

    def test_unknown_session_event(self, client, make_user):
        user = make_user()
        response = client.post("/api/auth/events", json={"event": "reboot"}, headers=auth(user))
        assert response.status_code == 400
