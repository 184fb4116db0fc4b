from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from leaveflow.errors import LeaveConflictError, LeaveNotFoundError, LeaveValidationError
from leaveflow.models import Team, UserProfile, UserRole
from leaveflow.services.ledger import run_transaction

logger = logging.getLogger("leaveflow.teams")

DUPLICATE_TEAM_NAME = "A team with this name already exists."
TEAM_LEAD_TAKEN = "This team already has a team lead assigned."
LEAD_IN_OTHER_TEAM = "Selected team lead is assigned to another team."
MANAGER_IN_OTHER_TEAM = "Selected manager is assigned to another team."
LEAD_EQUALS_MANAGER = "Team lead and manager must be different users."
TEAM_NAME_REQUIRED = "Team name is required."


@dataclass(slots=True)
class UpdateTeamInput:
    team_id: int
    name: str
    lead_uid: str | None = None
    manager_uid: str | None = None


def normalize_team_name(name: str) -> str:
    return (name or "").strip().lower()


def is_duplicate_team_name(teams: Iterable[Team], name: str, exclude_id: int | None = None) -> bool:
    normalized = normalize_team_name(name)
    if not normalized:
        return False
    return any(
        normalize_team_name(team.name) == normalized
        for team in teams
        if exclude_id is None or team.id != exclude_id
    )


def find_team_lead_conflict(
    users: Iterable[UserProfile],
    team_id: int,
    selected_lead_uid: str | None,
) -> UserProfile | None:
    for user in users:
        if user.team_id == team_id and user.role == UserRole.TEAM_LEAD and user.uid != selected_lead_uid:
            return user
    return None


def list_teams(db: Session) -> list[Team]:
    return list(db.scalars(select(Team).order_by(Team.name.asc(), Team.id.asc())).all())


def get_team(db: Session, team_id: int) -> Team:
    team = db.get(Team, team_id)
    if team is None:
        raise LeaveNotFoundError("Team not found.")
    return team


def create_team(db: Session, *, name: str) -> Team:
    clean_name = (name or "").strip()
    if not clean_name:
        raise LeaveValidationError(TEAM_NAME_REQUIRED)
    if is_duplicate_team_name(list_teams(db), clean_name):
        raise LeaveConflictError(DUPLICATE_TEAM_NAME)

    def _work(session: Session) -> Team:
        team = Team(name=clean_name, lead_uid=None, manager_uid=None)
        session.add(team)
        session.flush()
        return team

    team = run_transaction(db, _work, name="team_create")
    logger.info("team_created", extra={"team_id": team.id, "team_name": team.name})
    return team


def update_team(db: Session, data: UpdateTeamInput) -> Team:
    team = get_team(db, data.team_id)
    lead_uid = (data.lead_uid or "").strip() or None
    manager_uid = (data.manager_uid or "").strip() or None

    if is_duplicate_team_name(list_teams(db), data.name, exclude_id=team.id):
        raise LeaveConflictError(DUPLICATE_TEAM_NAME)
    if lead_uid and manager_uid and lead_uid == manager_uid:
        raise LeaveValidationError(LEAD_EQUALS_MANAGER)

    if lead_uid:
        members = db.scalars(select(UserProfile).where(UserProfile.team_id == team.id)).all()
        if find_team_lead_conflict(members, team.id, lead_uid) is not None:
            raise LeaveConflictError(TEAM_LEAD_TAKEN)
        lead = db.get(UserProfile, lead_uid)
        if lead is None:
            raise LeaveNotFoundError("Selected team lead was not found.")
        if lead.team_id is not None and lead.team_id != team.id:
            raise LeaveConflictError(LEAD_IN_OTHER_TEAM)

    if manager_uid:
        manager = db.get(UserProfile, manager_uid)
        if manager is None:
            raise LeaveNotFoundError("Selected manager was not found.")
        if manager.team_id is not None and manager.team_id != team.id:
            raise LeaveConflictError(MANAGER_IN_OTHER_TEAM)

    def _work(session: Session) -> Team:
        target = session.scalar(
            select(Team)
            .where(Team.id == team.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        target.name = (data.name or "").strip() or target.name
        target.lead_uid = lead_uid
        target.manager_uid = manager_uid
        return target

    team = run_transaction(db, _work, name="team_update")
    logger.info(
        "team_updated",
        extra={"team_id": team.id, "lead_uid": team.lead_uid, "manager_uid": team.manager_uid},
    )
    return team
