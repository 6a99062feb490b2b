"""
Membership lookups and metric parameter builders for members, teams and organizations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from shared.errors import NotFoundError
from shared.logging import get_logger
from .rules.models import Interval
from .rules.params import (
    EXTERNAL_ACCOUNT_IDS_KEY, ORGANIZATION_ID_KEY, PEERS_EXTERNAL_ACCOUNT_IDS_KEY, TOOL_NAMES_KEY
)

AI_CODE_ASSISTANT_ACCOUNT_TYPE = "ai-code-assistant"

# Dates are passed through unparsed; extraction validates them.
DateInput = Union[date, str, None]


@dataclass(frozen=True)
class ExternalAccount:
    """A member's account on an external tool."""
    account_id: str
    organization_id: str
    member_id: str
    account_type: str = AI_CODE_ASSISTANT_ACCOUNT_TYPE


@dataclass(frozen=True)
class OrganizationMember:
    member_id: str
    organization_id: str
    title_id: Optional[str] = None


class MembershipDirectory(ABC):
    """Read access to organization members, teams and external accounts."""

    @abstractmethod
    async def get_external_account_ids(self, organization_id: str,
                                       member_ids: Optional[Sequence[str]] = None,
                                       account_type: str = AI_CODE_ASSISTANT_ACCOUNT_TYPE) -> List[str]:
        """Account ids of the given members, or of every member when ``member_ids`` is None."""

    @abstractmethod
    async def get_member_title_id(self, organization_id: str, member_id: str) -> Optional[str]:
        """Title of a member. Raises NotFoundError for unknown members."""

    @abstractmethod
    async def get_member_ids_by_title(self, organization_id: str, title_id: str) -> List[str]:
        """Members holding a title."""

    @abstractmethod
    async def get_team_member_ids(self, organization_id: str, team_id: str) -> List[str]:
        """Members of a team. Raises NotFoundError for unknown teams."""


class InMemoryMembershipDirectory(MembershipDirectory):
    """Membership directory held in process memory."""

    def __init__(self, members: Iterable[OrganizationMember] = (),
                 accounts: Iterable[ExternalAccount] = (),
                 teams: Optional[Dict[str, Dict[str, List[str]]]] = None):
        self._members: Dict[str, Dict[str, OrganizationMember]] = {}
        self._accounts: List[ExternalAccount] = []
        self._teams: Dict[str, Dict[str, List[str]]] = {}

        for member in members:
            self.add_member(member)
        for account in accounts:
            self.add_account(account)
        for organization_id, org_teams in (teams or {}).items():
            for team_id, member_ids in org_teams.items():
                self.add_team(organization_id, team_id, member_ids)

    def add_member(self, member: OrganizationMember) -> None:
        self._members.setdefault(member.organization_id, {})[member.member_id] = member

    def add_account(self, account: ExternalAccount) -> None:
        self._accounts.append(account)

    def add_team(self, organization_id: str, team_id: str, member_ids: Iterable[str]) -> None:
        self._teams.setdefault(organization_id, {})[team_id] = list(member_ids)

    async def get_external_account_ids(self, organization_id: str,
                                       member_ids: Optional[Sequence[str]] = None,
                                       account_type: str = AI_CODE_ASSISTANT_ACCOUNT_TYPE) -> List[str]:
        wanted = set(member_ids) if member_ids is not None else None
        return [
            account.account_id for account in self._accounts
            if account.organization_id == organization_id
            and account.account_type == account_type
            and (wanted is None or account.member_id in wanted)
        ]

    async def get_member_title_id(self, organization_id: str, member_id: str) -> Optional[str]:
        member = self._members.get(organization_id, {}).get(member_id)
        if member is None:
            raise NotFoundError(
                "organization member not found",
                {"organization_id": organization_id, "member_id": member_id}
            )
        return member.title_id

    async def get_member_ids_by_title(self, organization_id: str, title_id: str) -> List[str]:
        return [
            member.member_id for member in self._members.get(organization_id, {}).values()
            if member.title_id == title_id
        ]

    async def get_team_member_ids(self, organization_id: str, team_id: str) -> List[str]:
        member_ids = self._teams.get(organization_id, {}).get(team_id)
        if member_ids is None:
            raise NotFoundError(
                "team not found",
                {"organization_id": organization_id, "team_id": team_id}
            )
        return list(member_ids)


class MetricScopeBuilder:
    """Builds raw metric rule parameters for members, teams and organizations.

    A builder returns None when the subject has no AI code assistant accounts;
    callers answer that with an empty metrics response.
    """

    def __init__(self, membership: MembershipDirectory, default_interval: str = Interval.WEEKLY.value):
        self.membership = membership
        # Used by team and organization scopes when no interval is given
        self.default_interval = default_interval
        self.logger = get_logger("metrics.peers")

    async def member_account_ids(self, organization_id: str, member_id: str) -> List[str]:
        """AI code assistant accounts of a known member. Raises NotFoundError for unknown members."""
        await self.membership.get_member_title_id(organization_id, member_id)
        return await self.membership.get_external_account_ids(organization_id, [member_id])

    async def member_params(self, organization_id: str, member_id: str,
                            start_date: DateInput, end_date: DateInput,
                            interval: Optional[str],
                            tool_names: Optional[Sequence[str]] = None) -> Optional[Dict[str, Any]]:
        """Parameters for one member, compared against members sharing their title."""
        title_id = await self.membership.get_member_title_id(organization_id, member_id)

        account_ids = await self.membership.get_external_account_ids(organization_id, [member_id])
        if not account_ids:
            self.logger.info(
                "Member has no AI code assistant accounts",
                organization_id=organization_id,
                member_id=member_id
            )
            return None

        peer_account_ids: List[str] = []
        if title_id is not None:
            peer_member_ids = [
                peer_id for peer_id in await self.membership.get_member_ids_by_title(organization_id, title_id)
                if peer_id != member_id
            ]
            if peer_member_ids:
                peer_account_ids = await self.membership.get_external_account_ids(
                    organization_id, peer_member_ids
                )

        self.logger.debug(
            "Member peers resolved",
            organization_id=organization_id,
            member_id=member_id,
            title_id=title_id,
            peer_accounts=len(peer_account_ids)
        )

        return self._params(organization_id, start_date, end_date, interval, tool_names,
                            account_ids=account_ids, peer_account_ids=peer_account_ids)

    async def team_params(self, organization_id: str, team_id: str,
                          start_date: DateInput, end_date: DateInput,
                          interval: Optional[str] = None,
                          tool_names: Optional[Sequence[str]] = None) -> Optional[Dict[str, Any]]:
        """Parameters for the accounts of every team member. No peer comparison."""
        member_ids = await self.membership.get_team_member_ids(organization_id, team_id)
        account_ids = (
            await self.membership.get_external_account_ids(organization_id, member_ids)
            if member_ids else []
        )
        if not account_ids:
            return None

        return self._params(organization_id, start_date, end_date,
                            interval or self.default_interval, tool_names, account_ids=account_ids)

    async def organization_params(self, organization_id: str,
                                  start_date: DateInput, end_date: DateInput,
                                  interval: Optional[str] = None,
                                  tool_names: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Parameters covering every account of the organization. No peer comparison."""
        return self._params(organization_id, start_date, end_date,
                            interval or self.default_interval, tool_names)

    @staticmethod
    def _params(organization_id, start_date, end_date, interval, tool_names,
                account_ids=None, peer_account_ids=None) -> Dict[str, Any]:
        metric_params: Dict[str, Any] = {ORGANIZATION_ID_KEY: organization_id}
        if account_ids is not None:
            metric_params[EXTERNAL_ACCOUNT_IDS_KEY] = list(account_ids)
        if peer_account_ids is not None:
            metric_params[PEERS_EXTERNAL_ACCOUNT_IDS_KEY] = list(peer_account_ids)
        if tool_names:
            metric_params[TOOL_NAMES_KEY] = list(tool_names)

        return {
            "interval": interval,
            "startDate": start_date,
            "endDate": end_date,
            "metricParams": metric_params,
        }
