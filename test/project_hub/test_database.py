"""
Tests for the ProjectDatabase layer.

Covers schema setup, CRUD for every resource, cascade behavior, the calendar
intersection filter, participant reconciliation, due-date reminders and the
paginated activity log.
"""

import sqlite3
import tempfile
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from project_hub.database import ProjectDatabase, _parse_json


class TestDatabaseInitialization:
    """Test database setup and configuration."""

    def test_wal_mode_and_foreign_keys(self, temp_db):
        cursor = temp_db._connection.cursor()
        cursor.execute("PRAGMA journal_mode")
        assert cursor.fetchone()[0].lower() == "wal"
        cursor.execute("PRAGMA foreign_keys")
        assert cursor.fetchone()[0] == 1

    def test_schema_creation(self, temp_db):
        """All tables are created."""
        cursor = temp_db._connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'")
        tables = {row[0] for row in cursor.fetchall()}
        assert tables == {
            "users", "projects", "project_members", "tasks", "comments", "notifications",
            "calendar_events", "event_participants", "activity_logs",
        }

    def test_directory_creation(self):
        """Database directory is created if it doesn't exist."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            db_path = Path(tmp_dir) / "subdir" / "hub.db"
            db = ProjectDatabase(str(db_path))
            assert db_path.exists()
            db.close()

    def test_initialize_fresh_drops_data(self, temp_db):
        temp_db.create_user("Ada", "ada@example.com")
        temp_db.initialize_fresh()
        assert temp_db.list_users() == []

    def test_check_constraints_reject_unknown_status(self, temp_db):
        with pytest.raises(sqlite3.IntegrityError):
            temp_db.create_project({"name": "Bad", "status": "archived"})


class TestUsers:

    def test_create_and_get_user_hides_password_hash(self, temp_db):
        user_id = temp_db.create_user("Ada", "ada@example.com", password_hash="hashed", role="admin")
        user = temp_db.get_user(user_id)
        assert user["name"] == "Ada"
        assert user["role"] == "admin"
        assert "password_hash" not in user

        with_hash = temp_db.get_user_by_email("ada@example.com", include_password_hash=True)
        assert with_hash["password_hash"] == "hashed"

    def test_email_unique_case_insensitive(self, temp_db):
        temp_db.create_user("Ada", "ada@example.com")
        with pytest.raises(sqlite3.IntegrityError):
            temp_db.create_user("Ada Again", "ADA@example.com")
        assert temp_db.email_exists("Ada@Example.com")

    def test_email_exists_excludes_self(self, temp_db):
        user_id = temp_db.create_user("Ada", "ada@example.com")
        assert not temp_db.email_exists("ada@example.com", exclude_user_id=user_id)

    def test_list_users_counts_and_filters(self, temp_db, make_user):
        ada = make_user("Ada", role="admin")
        bob = make_user("Bob")
        project_id = temp_db.create_project({"name": "Alpha", "owner_id": ada})
        temp_db.create_task({"project_id": project_id, "title": "T1", "assignee_id": bob})
        temp_db.create_task({"project_id": project_id, "title": "T2", "assignee_id": bob})

        users = {u["name"]: u for u in temp_db.list_users()}
        assert users["Ada"]["project_count"] == 1
        assert users["Bob"]["task_count"] == 2

        admins = temp_db.list_users(role="admin")
        assert [u["name"] for u in admins] == ["Ada"]
        assert [u["name"] for u in temp_db.list_users(search="bo")] == ["Bob"]

    def test_find_missing_users(self, temp_db, make_user):
        existing = make_user()
        assert temp_db.find_missing_users([existing, 999, existing]) == [999]
        assert temp_db.find_missing_users([]) == []

    def test_delete_user_detaches_owned_rows(self, temp_db, make_user):
        owner = make_user()
        project_id = temp_db.create_project({"name": "Alpha", "owner_id": owner})
        task_id = temp_db.create_task({"project_id": project_id, "title": "T", "assignee_id": owner})

        assert temp_db.delete_user(owner) is True
        assert temp_db.get_project(project_id)["owner_id"] is None
        assert temp_db.get_task(task_id)["assignee_id"] is None
        assert temp_db.list_project_members(project_id) == []
        assert temp_db.delete_user(owner) is False


class TestProjects:

    def test_create_project_defaults_and_owner_membership(self, temp_db, make_user):
        owner = make_user("Owner")
        project_id = temp_db.create_project({"name": "Alpha", "owner_id": owner})

        project = temp_db.get_project(project_id)
        assert project["status"] == "planning"
        assert project["priority"] == "medium"
        assert project["owner_name"] == "Owner"
        assert project["task_count"] == 0

        members = temp_db.list_project_members(project_id)
        assert [(m["user_id"], m["role"]) for m in members] == [(owner, "owner")]

    def test_create_project_rolls_back_on_bad_owner(self, temp_db):
        with pytest.raises(sqlite3.IntegrityError):
            temp_db.create_project({"name": "Ghost", "owner_id": 404})
        assert temp_db.list_projects() == []

    def test_list_projects_filters_and_counts(self, temp_db):
        alpha = temp_db.create_project({"name": "Alpha", "status": "in_progress", "priority": "high"})
        temp_db.create_project({"name": "Beta", "description": "marketing site"})
        temp_db.create_task({"project_id": alpha, "title": "A", "status": "done"})
        temp_db.create_task({"project_id": alpha, "title": "B"})

        assert [p["name"] for p in temp_db.list_projects(status="in_progress")] == ["Alpha"]
        assert [p["name"] for p in temp_db.list_projects(priority="medium")] == ["Beta"]
        assert [p["name"] for p in temp_db.list_projects(search="marketing")] == ["Beta"]

        # Newest first
        listed = temp_db.list_projects()
        assert [p["name"] for p in listed] == ["Beta", "Alpha"]
        assert listed[1]["task_count"] == 2
        assert listed[1]["completed_tasks"] == 1
        assert len(temp_db.list_projects(limit=1)) == 1

    def test_update_project_partial(self, temp_db):
        project_id = temp_db.create_project({"name": "Alpha", "description": "keep me"})
        assert temp_db.update_project(project_id, {"status": "on_hold", "bogus": "ignored"}) is True

        project = temp_db.get_project(project_id)
        assert project["status"] == "on_hold"
        assert project["description"] == "keep me"
        assert temp_db.update_project(999, {"status": "on_hold"}) is False

    def test_delete_project_cascades(self, temp_db, make_user):
        owner = make_user()
        project_id = temp_db.create_project({"name": "Alpha", "owner_id": owner})
        task_id = temp_db.create_task({"project_id": project_id, "title": "T"})
        temp_db.create_comment(task_id, owner, "hello")

        result = temp_db.delete_project(project_id)
        assert result["success"] is True
        assert result["cascaded_tasks"] == 1
        assert result["cascaded_members"] == 1
        assert temp_db.get_task(task_id) is None
        assert temp_db.list_comments(task_id) == []

    def test_delete_missing_project(self, temp_db):
        result = temp_db.delete_project(42)
        assert result["success"] is False
        assert "not found" in result["error"]

    def test_project_task_stats(self, temp_db):
        project_id = temp_db.create_project({"name": "Alpha"})
        temp_db.create_task({"project_id": project_id, "title": "Done", "status": "done",
                             "due_date": "2024-01-01", "estimated_hours": 4})
        temp_db.create_task({"project_id": project_id, "title": "Late", "due_date": "2024-01-05",
                             "estimated_hours": 2, "actual_hours": 3})
        temp_db.create_task({"project_id": project_id, "title": "Later", "due_date": "2024-02-01"})

        stats = temp_db.get_project_task_stats(project_id, today=date(2024, 1, 10))
        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["overdue"] == 1
        assert stats["estimated_hours"] == 6
        assert stats["actual_hours"] == 3

    def test_add_member_then_change_role(self, temp_db, make_user):
        user = make_user()
        project_id = temp_db.create_project({"name": "Alpha"})
        assert temp_db.add_project_member(project_id, user, "member") is True
        assert temp_db.add_project_member(project_id, user, "manager") is False
        assert temp_db.list_project_members(project_id)[0]["role"] == "manager"
        assert temp_db.remove_project_member(project_id, user) is True
        assert temp_db.remove_project_member(project_id, user) is False


class TestTasks:

    def setup_method(self):
        self.tmp_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
        self.db_path = self.tmp_file.name
        self.db = ProjectDatabase(self.db_path)
        self.project_id = self.db.create_project({"name": "Alpha"})

    def teardown_method(self):
        self.db.close()
        Path(self.db_path).unlink(missing_ok=True)

    def test_ordering_due_date_then_priority(self):
        """Dated tasks first by due date, urgent before others on the same day, undated last."""
        self.db.create_task({"project_id": self.project_id, "title": "undated-urgent", "priority": "urgent"})
        self.db.create_task({"project_id": self.project_id, "title": "jan2-low", "priority": "low",
                             "due_date": "2024-01-02"})
        self.db.create_task({"project_id": self.project_id, "title": "jan2-urgent", "priority": "urgent",
                             "due_date": "2024-01-02"})
        self.db.create_task({"project_id": self.project_id, "title": "jan1-medium",
                             "due_date": "2024-01-01"})

        titles = [t["title"] for t in self.db.list_tasks(project_id=self.project_id)]
        assert titles == ["jan1-medium", "jan2-urgent", "jan2-low", "undated-urgent"]

    def test_task_includes_project_and_assignee_names(self):
        user_id = self.db.create_user("Bob", "bob@example.com")
        task_id = self.db.create_task({"project_id": self.project_id, "title": "T", "assignee_id": user_id})
        task = self.db.get_task(task_id)
        assert task["project_name"] == "Alpha"
        assert task["assignee_name"] == "Bob"
        assert task["status"] == "todo"

    def test_list_tasks_filters(self):
        user_id = self.db.create_user("Bob", "bob@example.com")
        self.db.create_task({"project_id": self.project_id, "title": "Write docs", "assignee_id": user_id,
                             "status": "review"})
        self.db.create_task({"project_id": self.project_id, "title": "Fix bug", "priority": "high"})

        assert [t["title"] for t in self.db.list_tasks(assignee_id=user_id)] == ["Write docs"]
        assert [t["title"] for t in self.db.list_tasks(status="review")] == ["Write docs"]
        assert [t["title"] for t in self.db.list_tasks(priority="high")] == ["Fix bug"]
        assert [t["title"] for t in self.db.list_tasks(search="bug")] == ["Fix bug"]

    def test_task_requires_existing_project(self):
        with pytest.raises(sqlite3.IntegrityError):
            self.db.create_task({"project_id": 999, "title": "Orphan"})

    def test_delete_task_reports_comments(self):
        user_id = self.db.create_user("Bob", "bob@example.com")
        task_id = self.db.create_task({"project_id": self.project_id, "title": "T"})
        self.db.create_comment(task_id, user_id, "one")
        self.db.create_comment(task_id, user_id, "two")

        result = self.db.delete_task(task_id)
        assert result["success"] is True
        assert result["cascaded_comments"] == 2
        assert self.db.delete_task(task_id)["success"] is False

    def test_comments_newest_first(self):
        user_id = self.db.create_user("Bob", "bob@example.com")
        task_id = self.db.create_task({"project_id": self.project_id, "title": "T"})
        self.db.create_comment(task_id, user_id, "first")
        self.db.create_comment(task_id, user_id, "second")

        comments = self.db.list_comments(task_id)
        assert [c["content"] for c in comments] == ["second", "first"]
        assert comments[0]["user_name"] == "Bob"


class TestNotifications:

    def test_list_and_mark_read(self, temp_db, make_user):
        user = make_user()
        other = make_user()
        first = temp_db.create_notification(user, "mention", "One")
        temp_db.create_notification(user, "mention", "Two")
        temp_db.create_notification(other, "mention", "Not yours")

        assert temp_db.count_unread_notifications(user) == 2
        notifications = temp_db.list_notifications(user)
        assert [n["title"] for n in notifications] == ["Two", "One"]
        assert notifications[0]["is_read"] is False

        assert temp_db.mark_notification_read(user, first) == 1
        assert temp_db.mark_notification_read(other, first) == 0
        assert [n["title"] for n in temp_db.list_notifications(user, unread_only=True)] == ["Two"]

        assert temp_db.mark_all_notifications_read(user) == 1
        assert temp_db.count_unread_notifications(user) == 0
        assert temp_db.count_unread_notifications(other) == 1

    def test_delete_only_own_notification(self, temp_db, make_user):
        user = make_user()
        other = make_user()
        notification_id = temp_db.create_notification(user, "mention", "Mine")
        assert temp_db.delete_notification(other, notification_id) is False
        assert temp_db.delete_notification(user, notification_id) is True

    def test_due_notifications_are_created_once(self, temp_db, make_user):
        assignee = make_user()
        project_id = temp_db.create_project({"name": "Alpha"})
        due_task = temp_db.create_task({"project_id": project_id, "title": "Due soon",
                                        "assignee_id": assignee, "due_date": "2024-03-02"})
        temp_db.create_task({"project_id": project_id, "title": "Far away",
                             "assignee_id": assignee, "due_date": "2024-04-01"})
        temp_db.create_task({"project_id": project_id, "title": "Finished", "status": "done",
                             "assignee_id": assignee, "due_date": "2024-03-01"})
        temp_db.create_task({"project_id": project_id, "title": "Unassigned", "due_date": "2024-03-01"})

        today = date(2024, 3, 1)
        created = temp_db.create_due_notifications(window_days=1, today=today)
        assert len(created) == 1
        notification = temp_db.list_notifications(assignee)[0]
        assert notification["type"] == "task_due"
        assert notification["link"] == f"/tasks/{due_task}"

        assert temp_db.create_due_notifications(window_days=1, today=today) == []

        # A new due date earns a new reminder
        temp_db.update_task(due_task, {"due_date": "2024-03-01"})
        assert len(temp_db.create_due_notifications(window_days=1, today=today)) == 1


class TestCalendarEvents:

    def _event(self, title, start, end, **extra):
        data = {"title": title, "start_time": start, "end_time": end, "event_type": "meeting"}
        data.update(extra)
        return data

    def test_create_event_with_participants(self, temp_db, make_user):
        creator = make_user("Creator")
        guest = make_user("Guest")
        event_id = temp_db.create_event(
            self._event("Kickoff", "2024-03-01T09:00:00Z", "2024-03-01T10:00:00Z", all_day=False),
            participant_ids=[guest], created_by=creator,
        )

        event = temp_db.get_event(event_id)
        assert len(event_id) == 36
        assert event["created_by_name"] == "Creator"
        assert event["all_day"] is False
        assert event["entity_type"] == "none"
        assert [(p["user_name"], p["status"]) for p in event["participants"]] == [("Guest", "pending")]

    def test_create_event_is_atomic(self, temp_db):
        with pytest.raises(sqlite3.IntegrityError):
            temp_db.create_event(self._event("Broken", "2024-03-01T09:00:00Z", "2024-03-01T10:00:00Z"),
                                 participant_ids=[999])
        assert temp_db.list_events("2024-01-01T00:00:00Z", "2024-12-31T23:59:59Z") == []

    def test_end_before_start_rejected(self, temp_db):
        with pytest.raises(sqlite3.IntegrityError):
            temp_db.create_event(self._event("Backwards", "2024-03-02T00:00:00Z", "2024-03-01T00:00:00Z"))

    def test_list_events_uses_interval_intersection(self, temp_db):
        temp_db.create_event(self._event("Inside", "2024-03-01T09:00:00Z", "2024-03-01T10:00:00Z"))
        temp_db.create_event(self._event("Spanning", "2024-02-28T00:00:00Z", "2024-03-02T00:00:00Z"))
        temp_db.create_event(self._event("Starts late in day", "2024-03-01T23:00:00Z", "2024-03-03T00:00:00Z"))
        temp_db.create_event(self._event("Before", "2024-02-20T00:00:00Z", "2024-02-21T00:00:00Z"))
        temp_db.create_event(self._event("After", "2024-03-05T00:00:00Z", "2024-03-05T01:00:00Z"))

        events = temp_db.list_events("2024-03-01T00:00:00Z", "2024-03-01T23:59:59Z")
        assert [e["title"] for e in events] == ["Spanning", "Inside", "Starts late in day"]

    def test_list_events_filters(self, temp_db, make_user):
        creator = make_user()
        guest = make_user()
        outsider = make_user()
        project_id = temp_db.create_project({"name": "Alpha"})
        temp_db.create_event(self._event("Standup", "2024-03-01T09:00:00Z", "2024-03-01T09:15:00Z",
                                         project_id=project_id),
                             participant_ids=[guest], created_by=creator)
        temp_db.create_event(self._event("Holiday", "2024-03-01T00:00:00Z", "2024-03-01T23:59:59Z",
                                         event_type="holiday"))

        start, end = "2024-03-01T00:00:00Z", "2024-03-01T23:59:59Z"
        assert [e["title"] for e in temp_db.list_events(start, end, project_id=project_id)] == ["Standup"]
        assert [e["title"] for e in temp_db.list_events(start, end, user_id=guest)] == ["Standup"]
        assert [e["title"] for e in temp_db.list_events(start, end, user_id=creator)] == ["Standup"]
        assert temp_db.list_events(start, end, user_id=outsider) == []
        assert [e["title"] for e in temp_db.list_events(start, end, event_type="holiday")] == ["Holiday"]
        assert [e["title"] for e in temp_db.list_events(start, end, exclude_types=["holiday"])] == ["Standup"]

    def test_update_event_reconciles_participants(self, temp_db, make_user):
        keep = make_user()
        drop = make_user()
        add = make_user()
        data = self._event("Review", "2024-03-01T09:00:00Z", "2024-03-01T10:00:00Z")
        event_id = temp_db.create_event(data, participant_ids=[keep, drop])
        temp_db.respond_to_event(event_id, keep, "accepted", "see you")

        data["title"] = "Design review"
        delta = temp_db.update_event(event_id, data, participant_ids=[keep, add])
        assert delta == {"added": [add], "removed": [drop]}

        event = temp_db.get_event(event_id)
        assert event["title"] == "Design review"
        statuses = {p["user_id"]: p["status"] for p in event["participants"]}
        assert statuses == {keep: "accepted", add: "pending"}

    def test_update_event_without_participants_keeps_them(self, temp_db, make_user):
        guest = make_user()
        data = self._event("Review", "2024-03-01T09:00:00Z", "2024-03-01T10:00:00Z")
        event_id = temp_db.create_event(data, participant_ids=[guest])

        assert temp_db.update_event(event_id, data) == {"added": [], "removed": []}
        assert len(temp_db.get_event(event_id)["participants"]) == 1
        assert temp_db.update_event("missing", data) is None

    def test_respond_requires_participant(self, temp_db, make_user):
        guest = make_user()
        stranger = make_user()
        event_id = temp_db.create_event(
            self._event("Review", "2024-03-01T09:00:00Z", "2024-03-01T10:00:00Z"), participant_ids=[guest])

        assert temp_db.respond_to_event(event_id, stranger, "accepted") is False
        assert temp_db.respond_to_event(event_id, guest, "tentative", "maybe") is True
        participant = temp_db.get_event(event_id)["participants"][0]
        assert participant["status"] == "tentative"
        assert participant["response_note"] == "maybe"
        assert participant["responded_at"] is not None

    def test_delete_event_cascades_participants(self, temp_db, make_user):
        guest = make_user()
        event_id = temp_db.create_event(
            self._event("Review", "2024-03-01T09:00:00Z", "2024-03-01T10:00:00Z"), participant_ids=[guest])
        assert temp_db.delete_event(event_id) is True
        cursor = temp_db._connection.cursor()
        cursor.execute("SELECT COUNT(*) FROM event_participants WHERE event_id = ?", (event_id,))
        assert cursor.fetchone()[0] == 0
        assert temp_db.delete_event(event_id) is False


class TestActivityLog:

    def _entry(self, **overrides):
        entry = {
            "action": "update",
            "description": "Updated project",
            "entity_type": "project",
            "entity_id": 1,
            "user_id": "7",
            "user_name": "Ada",
            "old_values": {"status": "planning"},
            "new_values": {"status": "completed"},
            "metadata": None,
        }
        entry.update(overrides)
        return entry

    def test_json_columns_round_trip(self, temp_db):
        activity_id = temp_db.add_activity(self._entry())
        entry = temp_db.get_activity(activity_id)
        assert entry["entity_id"] == "1"
        assert entry["old_values"] == {"status": "planning"}
        assert entry["metadata"] is None

    def test_pagination_and_filters(self, temp_db):
        for i in range(12):
            temp_db.add_activity(self._entry(entity_id=i, action="create" if i % 2 else "delete"))

        page, total = temp_db.list_activity(page=2, limit=5)
        assert total == 12
        assert len(page) == 5
        # Newest first
        assert page[0]["entity_id"] == "6"

        creates, total = temp_db.list_activity(action="create")
        assert total == 6
        assert all(e["action"] == "create" for e in creates)

        one, total = temp_db.list_activity(entity_type="project", entity_id="3")
        assert total == 1 and one[0]["entity_id"] == "3"

    def test_search_and_date_filters(self, temp_db):
        temp_db.add_activity(self._entry(description="Renamed board", user_name="Grace"))
        temp_db.add_activity(self._entry(description="Other"))

        found, total = temp_db.list_activity(search="grace")
        assert total == 1 and found[0]["description"] == "Renamed board"

        today = datetime.now(timezone.utc).date().isoformat()
        _, total = temp_db.list_activity(start_date=today, end_date=today)
        assert total == 2
        _, total = temp_db.list_activity(end_date="2000-01-01")
        assert total == 0

    def test_parse_json_fallback(self):
        assert _parse_json(None) is None
        assert _parse_json('{"a": 1}') == {"a": 1}
        assert _parse_json("not json") == {"_raw": "not json", "_parse_error": True}

    def test_invalid_json_rejected_by_schema(self, temp_db):
        cursor = temp_db._connection.cursor()
        with pytest.raises(sqlite3.IntegrityError):
            cursor.execute(
                "INSERT INTO activity_logs (action, description, entity_type, entity_id, metadata, created_at) "
                "VALUES ('x', 'x', 'x', '1', 'not json', '2024-01-01T00:00:00Z')"
            )


class TestSearchAndReports:

    def test_search_limits_per_type(self, temp_db):
        for i in range(7):
            temp_db.create_project({"name": f"Apollo {i}"})
        temp_db.create_user("Apollonia", "apollonia@example.com")

        results = temp_db.search("apollo")
        assert len([r for r in results if r["type"] == "project"]) == 5
        users = [r for r in results if r["type"] == "user"]
        assert users[0]["subtitle"] == "apollonia@example.com"

    def test_report_aggregates(self, temp_db, make_user):
        worker = make_user("Worker")
        project_id = temp_db.create_project({"name": "Alpha", "status": "in_progress"})
        temp_db.create_task({"project_id": project_id, "title": "A", "status": "done",
                             "priority": "low", "assignee_id": worker})
        temp_db.create_task({"project_id": project_id, "title": "B", "priority": "urgent"})

        report = temp_db.get_report(days=7)
        assert report["project_stats"]["total"] == 1
        assert report["project_stats"]["by_status"] == [{"status": "in_progress", "count": 1}]
        assert [p["priority"] for p in report["task_stats"]["by_priority"]] == ["urgent", "low"]
        assert report["user_stats"]["by_role"] == [{"role": "member", "count": 1}]
        assert report["daily_tasks"][0]["created"] == 2
        assert report["daily_tasks"][0]["completed"] == 1
        assert report["top_users"][0] == {"id": worker, "name": "Worker", "completed_tasks": 1}

    def test_count_entities(self, temp_db):
        temp_db.create_project({"name": "Alpha"})
        counts = temp_db.count_entities()
        assert counts["projects"] == 1
        assert counts["tasks"] == 0
