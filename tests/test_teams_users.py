from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

from leaveflow.errors import LeaveConflictError, LeaveNotFoundError, LeaveValidationError
from leaveflow.models import LeaveStatus, LeaveType, Team, UserRole
from leaveflow.services import leave_repository
from leaveflow.services.context import LeaveContext
from leaveflow.services.requests import CreateLeaveRequestInput, create_leave_request
from leaveflow.services.teams import (
    UpdateTeamInput,
    create_team,
    find_team_lead_conflict,
    is_duplicate_team_name,
    update_team,
)
from leaveflow.services.users import (
    UpdateUserAdminInput,
    can_access_app,
    ensure_user_profile,
    get_access_issues,
    set_join_date,
    update_user_admin,
)
from tests.sqlite_support import add_team, add_user, make_session

START = datetime(2026, 4, 6, 9, 0, tzinfo=timezone.utc)


class TeamRuleTests(unittest.TestCase):
    def test_duplicate_name_is_case_and_space_insensitive(self) -> None:
        teams = [SimpleNamespace(id=1, name="Platform"), SimpleNamespace(id=2, name="Support")]
        self.assertTrue(is_duplicate_team_name(teams, "  platform "))  # type: ignore[arg-type]
        self.assertFalse(is_duplicate_team_name(teams, "Platform", exclude_id=1))  # type: ignore[arg-type]
        self.assertFalse(is_duplicate_team_name(teams, "   "))  # type: ignore[arg-type]

    def test_team_lead_conflict(self) -> None:
        users = [
            SimpleNamespace(uid="a", team_id=1, role=UserRole.TEAM_LEAD),
            SimpleNamespace(uid="b", team_id=1, role=UserRole.EMPLOYEE),
        ]
        self.assertEqual(find_team_lead_conflict(users, 1, "b").uid, "a")  # type: ignore[arg-type, union-attr]
        self.assertIsNone(find_team_lead_conflict(users, 1, "a"))  # type: ignore[arg-type]
        self.assertIsNone(find_team_lead_conflict(users, 2, "b"))  # type: ignore[arg-type]


class TeamServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.team = create_team(self.db, name="  Platform ")

    def tearDown(self) -> None:
        self.db.close()

    def test_create_trims_and_rejects_duplicates(self) -> None:
        self.assertEqual(self.team.name, "Platform")
        with self.assertRaises(LeaveConflictError) as ctx:
            create_team(self.db, name="PLATFORM")
        self.assertEqual(ctx.exception.message, "A team with this name already exists.")
        with self.assertRaises(LeaveValidationError):
            create_team(self.db, name="  ")

    def test_update_assigns_lead_and_manager(self) -> None:
        add_user(self.db, "lead", team=self.team, role=UserRole.TEAM_LEAD)
        add_user(self.db, "boss")

        team = update_team(
            self.db,
            UpdateTeamInput(team_id=self.team.id, name="Platform Core", lead_uid="lead", manager_uid="boss"),
        )

        self.assertEqual(team.name, "Platform Core")
        self.assertEqual(team.lead_uid, "lead")
        self.assertEqual(team.manager_uid, "boss")

    def test_lead_and_manager_must_differ(self) -> None:
        add_user(self.db, "lead", team=self.team)
        with self.assertRaises(LeaveValidationError) as ctx:
            update_team(self.db, UpdateTeamInput(team_id=self.team.id, name="Platform", lead_uid="lead", manager_uid="lead"))
        self.assertEqual(ctx.exception.message, "Team lead and manager must be different users.")

    def test_existing_team_lead_blocks_another(self) -> None:
        add_user(self.db, "lead", team=self.team, role=UserRole.TEAM_LEAD)
        add_user(self.db, "emp", team=self.team)
        with self.assertRaises(LeaveConflictError) as ctx:
            update_team(self.db, UpdateTeamInput(team_id=self.team.id, name="Platform", lead_uid="emp"))
        self.assertEqual(ctx.exception.message, "This team already has a team lead assigned.")

    def test_members_of_other_teams_are_refused(self) -> None:
        other = create_team(self.db, name="Support")
        add_user(self.db, "outsider", team=other)
        with self.assertRaises(LeaveConflictError) as ctx:
            update_team(self.db, UpdateTeamInput(team_id=self.team.id, name="Platform", lead_uid="outsider"))
        self.assertEqual(ctx.exception.message, "Selected team lead is assigned to another team.")
        with self.assertRaises(LeaveConflictError) as ctx:
            update_team(self.db, UpdateTeamInput(team_id=self.team.id, name="Platform", manager_uid="outsider"))
        self.assertEqual(ctx.exception.message, "Selected manager is assigned to another team.")

    def test_unknown_team(self) -> None:
        with self.assertRaises(LeaveNotFoundError):
            update_team(self.db, UpdateTeamInput(team_id=404, name="Nope"))


class UserProfileTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()

    def tearDown(self) -> None:
        self.db.close()

    def test_first_login_creates_blocked_profile(self) -> None:
        profile = ensure_user_profile(self.db, uid="u1", email="u1@example.com", display_name="User One")

        self.assertFalse(profile.is_whitelisted)
        self.assertEqual(profile.role, UserRole.EMPLOYEE)
        self.assertIsNone(profile.team_id)
        self.assertIsNotNone(profile.last_login_at)
        self.assertEqual(get_access_issues(profile), ["not_whitelisted", "no_team"])
        self.assertFalse(can_access_app(profile))

    def test_later_login_keeps_admin_fields(self) -> None:
        team = add_team(self.db, "Platform")
        add_user(self.db, "u1", team=team, role=UserRole.TEAM_LEAD)

        profile = ensure_user_profile(self.db, uid="u1", email="new@example.com", display_name=None)

        self.assertEqual(profile.email, "new@example.com")
        self.assertEqual(profile.display_name, "Employee")
        self.assertEqual(profile.role, UserRole.TEAM_LEAD)
        self.assertEqual(profile.team_id, team.id)
        self.assertTrue(can_access_app(profile))

    def test_admin_needs_no_team(self) -> None:
        admin = SimpleNamespace(is_whitelisted=True, role=UserRole.ADMIN, team_id=None)
        self.assertEqual(get_access_issues(admin), [])  # type: ignore[arg-type]
        self.assertEqual(get_access_issues(None), ["not_whitelisted", "no_team"])

    def test_join_date_is_set_once(self) -> None:
        add_user(self.db, "u1", join_date=None)
        profile = set_join_date(self.db, uid="u1", join_date=date(2025, 9, 1))
        self.assertEqual(profile.join_date, date(2025, 9, 1))

        with self.assertRaises(LeaveConflictError) as ctx:
            set_join_date(self.db, uid="u1", join_date=date(2025, 10, 1))
        self.assertEqual(ctx.exception.message, "Join date is already set and cannot be changed.")


class UpdateUserAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.ctx = LeaveContext(db=self.db)
        self.platform = add_team(self.db, "Platform")
        self.support = add_team(self.db, "Support")
        add_user(self.db, "lead", team=self.platform, role=UserRole.TEAM_LEAD)
        add_user(self.db, "emp", team=self.platform)
        self.platform.lead_uid = "lead"
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def _update(self, uid: str, *, role: UserRole, team_id: int | None, is_whitelisted: bool = True):  # type: ignore[no-untyped-def]
        return update_user_admin(
            self.ctx,
            UpdateUserAdminInput(uid=uid, is_whitelisted=is_whitelisted, role=role, team_id=team_id, actor_uid="root"),
        )

    def _submit(self, uid: str = "emp") -> int:
        return create_leave_request(
            self.ctx,
            CreateLeaveRequestInput(
                employee_uid=uid,
                leave_type=LeaveType.ANNUAL,
                start_at=START,
                end_at=START + timedelta(hours=2),
            ),
        ).request_id

    def test_promoting_to_team_lead_syncs_team(self) -> None:
        add_user(self.db, "newlead", team=self.support)

        result = self._update("newlead", role=UserRole.TEAM_LEAD, team_id=self.support.id)

        self.assertEqual(result.profile.role, UserRole.TEAM_LEAD)
        self.assertEqual(self.db.get(Team, self.support.id).lead_uid, "newlead")

    def test_second_team_lead_is_refused(self) -> None:
        with self.assertRaises(LeaveConflictError) as ctx:
            self._update("emp", role=UserRole.TEAM_LEAD, team_id=self.platform.id)
        self.assertEqual(ctx.exception.message, "This team already has a team lead assigned.")

    def test_team_change_cancels_pending_requests(self) -> None:
        request_id = self._submit()

        result = self._update("emp", role=UserRole.EMPLOYEE, team_id=self.support.id)

        self.assertEqual(result.cancelled_request_ids, [request_id])
        self.assertEqual(result.profile.team_id, self.support.id)
        request = leave_repository.get_request(self.db, request_id)
        self.assertEqual(request.status, LeaveStatus.CANCELLED)
        logs = leave_repository.list_logs(self.db, request_id)
        self.assertEqual(logs[-1].actor_uid, "root")
        self.assertEqual(logs[-1].meta, {"reason": "Cancelled due to team change"})

    def test_moving_lead_with_pending_team_requests_is_refused(self) -> None:
        self._submit()
        with self.assertRaises(LeaveConflictError) as ctx:
            self._update("lead", role=UserRole.TEAM_LEAD, team_id=self.support.id)
        self.assertEqual(
            ctx.exception.message,
            "This team has pending requests. Resolve them before changing this team lead/manager.",
        )

    def test_assigning_manager_to_team_with_pending_requests_is_refused(self) -> None:
        self._submit()
        add_user(self.db, "boss", team=self.support)
        with self.assertRaises(LeaveConflictError) as ctx:
            self._update("boss", role=UserRole.MANAGER, team_id=self.platform.id)
        self.assertEqual(
            ctx.exception.message,
            "This team has pending requests. Resolve them before assigning a team lead/manager.",
        )

    def test_whitelist_toggle_without_role_change_is_allowed(self) -> None:
        self._submit()
        result = self._update("lead", role=UserRole.TEAM_LEAD, team_id=self.platform.id, is_whitelisted=False)
        self.assertFalse(result.profile.is_whitelisted)
        self.assertEqual(result.cancelled_request_ids, [])

    def test_demoting_lead_clears_team_assignment(self) -> None:
        self._update("lead", role=UserRole.EMPLOYEE, team_id=self.platform.id)
        self.assertIsNone(self.db.get(Team, self.platform.id).lead_uid)


if __name__ == "__main__":
    unittest.main()
