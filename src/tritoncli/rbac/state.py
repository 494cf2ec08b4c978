"""Observed RBAC state, as CloudAPI reports it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from tritoncli.cloudapi.bulk import run_bulk
from tritoncli.cloudapi.client import CloudApi

logger = logging.getLogger(__name__)


@dataclass
class RbacState:
    users: list[dict[str, Any]] = field(default_factory=list)
    policies: list[dict[str, Any]] = field(default_factory=list)
    roles: list[dict[str, Any]] = field(default_factory=list)

    def user(self, login: str) -> dict[str, Any] | None:
        return next((u for u in self.users if u.get("login") == login), None)


def load_rbac_state(cloudapi: CloudApi, with_keys: bool = True) -> RbacState:
    """
    List the account's users, policies and roles.

    Each user gets ``keys`` (when *with_keys*) plus ``roles`` and
    ``default_roles`` derived from role membership.
    """
    state = RbacState(
        users=cloudapi.list_users(),
        policies=cloudapi.list_policies(),
        roles=cloudapi.list_roles(),
    )

    if with_keys and state.users:

        def fetch_keys(user: dict[str, Any]) -> list[dict[str, Any]]:
            return cloudapi.list_user_keys(user["id"])

        def attach(user: dict[str, Any], keys: list[dict[str, Any]]) -> None:
            user["keys"] = keys

        run_bulk(fetch_keys, state.users, on_success=attach)

    by_login = {}
    for user in state.users:
        user["roles"] = []
        user["default_roles"] = []
        by_login[user["login"]] = user
    for role in state.roles:
        for login in role.get("members") or []:
            if login in by_login:
                by_login[login]["roles"].append(role["name"])
        for login in role.get("default_members") or []:
            if login in by_login:
                by_login[login]["default_roles"].append(role["name"])

    logger.debug(
        "rbac state: %d users, %d policies, %d roles",
        len(state.users),
        len(state.policies),
        len(state.roles),
    )
    return state
