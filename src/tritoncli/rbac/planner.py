"""
RBAC planner: diff the desired document against observed state.

The plan is an ordered list of :class:`Change`.  Creates and updates run in
dependency order (users and their keys, then policies, then roles); deletes
run in reverse (roles, then policies, then users with their keys first).
Collections whose order carries no meaning (rules, members, policies) are
sorted before comparison, so reordering them never produces a change.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from tritoncli.core.config import Profile, load_profile, profile_exists
from tritoncli.core.exceptions import ConfigError
from tritoncli.rbac.model import RbacConfig, RbacUser
from tritoncli.rbac.state import RbacState

logger = logging.getLogger(__name__)


class Action(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    GENERATE = "generate"


class DiffOp(StrEnum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class Change:
    """One step of an RBAC update plan."""

    action: Action
    type: str  # user | key | policy | role | profile
    id: str
    desc: str | None = None
    have: dict[str, Any] | None = None
    want: dict[str, Any] | None = None
    diff: dict[str, DiffOp] | None = None
    user: str | None = None

    def summary(self) -> str:
        extra = ""
        if self.action == Action.UPDATE and self.diff:
            extra = " (" + ", ".join(f"{op} {f}" for f, op in self.diff.items()) + ")"
        return f"{self.action.capitalize()} {self.desc or self.type} {self.id}{extra}"


# ---------------------------------------------------------------------------
# Generic section diff
# ---------------------------------------------------------------------------


def _present(value: Any) -> bool:
    return value is not None and value != ""


def default_diff(have: dict[str, Any], want: dict[str, Any], compare_fields: Iterable[str]) -> dict[str, DiffOp]:
    diff: dict[str, DiffOp] = {}
    for f in compare_fields:
        hv, wv = have.get(f), want.get(f)
        if not _present(hv) and not _present(wv):
            continue
        if not _present(wv):
            diff[f] = DiffOp.DELETE
        elif not _present(hv):
            diff[f] = DiffOp.ADD
        elif hv != wv:
            diff[f] = DiffOp.UPDATE
    return diff


def crud_changes_for_things(
    type: str,
    id_field: str,
    have: Sequence[dict[str, Any]],
    want: Sequence[dict[str, Any]],
    compare_fields: Iterable[str] | Callable[[dict[str, Any]], Iterable[str]] = (),
    norm: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
    desc: str | None = None,
    user: str | None = None,
) -> list[Change]:
    """
    Diff one section keyed by *id_field*.

    Returns creates and updates in *want* order followed by deletes in
    *have* order.  *compare_fields* may be a callable of the wanted thing.
    """
    norm = norm or (lambda thing: thing)
    have_by_id = {h[id_field]: norm(dict(h)) for h in have}
    want_ids = set()
    changes: list[Change] = []

    for w in want:
        w = norm(dict(w))
        thing_id = w[id_field]
        want_ids.add(thing_id)
        h = have_by_id.get(thing_id)
        if h is None:
            changes.append(Change(Action.CREATE, type, thing_id, desc=desc, want=w, user=user))
            continue
        fields = compare_fields(w) if callable(compare_fields) else compare_fields
        diff = default_diff(h, w, fields)
        if diff:
            changes.append(Change(Action.UPDATE, type, thing_id, desc=desc, have=h, want=w, diff=diff, user=user))

    for thing_id, h in have_by_id.items():
        if thing_id not in want_ids:
            changes.append(Change(Action.DELETE, type, thing_id, desc=desc, have=h, user=user))
    return changes


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------


def _drop_empty(thing: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in thing.items() if _present(v)}


def _norm_policy(policy: dict[str, Any]) -> dict[str, Any]:
    policy = _drop_empty(policy)
    policy["rules"] = sorted(policy.get("rules") or [])
    return policy


def _norm_role(role: dict[str, Any]) -> dict[str, Any]:
    role = dict(role)
    for f in ("members", "default_members", "policies"):
        role[f] = sorted(role.get(f) or [])
    return role


def _norm_key(key: dict[str, Any]) -> dict[str, Any]:
    key = dict(key)
    key["key"] = " ".join(str(key.get("key", "")).split()[:2])
    return key


def _user_compare_fields(want: dict[str, Any]) -> list[str]:
    return [f for f in want if f not in ("login", "keys", "password")]


def _key_compare_fields(want: dict[str, Any]) -> list[str]:
    return ["name", "key"] if _present(want.get("name")) else ["key"]


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


def _key_dicts(user: RbacUser) -> list[dict[str, Any]]:
    return [k.model_dump(exclude_none=True) for k in user.keys or []]


def _key_changes(login: str, have: Sequence[dict[str, Any]], want: Sequence[dict[str, Any]]) -> list[Change]:
    """Per-fingerprint key diff; an update becomes delete then create."""
    out: list[Change] = []
    for c in crud_changes_for_things(
        "key",
        "fingerprint",
        have,
        want,
        compare_fields=_key_compare_fields,
        norm=_norm_key,
        desc=f"user {login} key",
        user=login,
    ):
        if c.action == Action.UPDATE:
            out.append(Change(Action.DELETE, "key", c.id, desc=c.desc, have=c.have, user=login))
            out.append(Change(Action.CREATE, "key", c.id, desc=c.desc, want=c.want, user=login))
        else:
            out.append(c)
    return out


def _user_changes(config: RbacConfig, state: RbacState) -> tuple[list[Change], list[Change]]:
    upserts: list[Change] = []
    deletes: list[Change] = []
    want = [u.cloudapi_fields() for u in config.users]
    for c in crud_changes_for_things(
        "user", "login", state.users, want, compare_fields=_user_compare_fields, norm=_drop_empty
    ):
        login = c.id
        if c.action == Action.CREATE:
            upserts.append(c)
            desired = config.user(login)
            upserts.extend(_key_changes(login, [], _key_dicts(desired)))
        elif c.action == Action.UPDATE:
            upserts.append(c)
        else:
            have = state.user(login) or {}
            deletes.extend(_key_changes(login, have.get("keys") or [], []))
            deletes.append(c)

    # Keys of users that exist on both sides, whether or not the user changed.
    for desired in config.users:
        have = state.user(desired.login)
        if have is None or desired.keys is None:
            continue
        upserts.extend(_key_changes(desired.login, have.get("keys") or [], _key_dicts(desired)))
    return upserts, deletes


def _split(changes: list[Change]) -> tuple[list[Change], list[Change]]:
    upserts = [c for c in changes if c.action != Action.DELETE]
    deletes = [c for c in changes if c.action == Action.DELETE]
    return upserts, deletes


def create_rbac_update_plan(
    config: RbacConfig,
    state: RbacState,
    dev_create_keys_and_profiles: bool = False,
    current_profile: Profile | None = None,
    cfg_dir: Path | None = None,
) -> list[Change]:
    """
    Return the ordered changes that turn *state* into *config*.

    With *dev_create_keys_and_profiles*, users without keys get a
    ``generate key`` change and every user gets a profile
    ``<current>-user-<login>`` (created, or updated when it differs).
    """
    user_upserts, user_deletes = _user_changes(config, state)
    policy_upserts, policy_deletes = _split(
        crud_changes_for_things(
            "policy",
            "name",
            state.policies,
            [p.model_dump() for p in config.policies],
            compare_fields=("description", "rules"),
            norm=_norm_policy,
        )
    )
    role_upserts, role_deletes = _split(
        crud_changes_for_things(
            "role",
            "name",
            state.roles,
            [r.model_dump() for r in config.roles],
            compare_fields=("members", "default_members", "policies"),
            norm=_norm_role,
        )
    )

    plan = user_upserts + policy_upserts + role_upserts + role_deletes + policy_deletes + user_deletes
    if dev_create_keys_and_profiles:
        if current_profile is None or cfg_dir is None:
            raise ConfigError("creating user keys and profiles requires a current profile and config dir")
        plan.extend(_dev_changes(config, current_profile, cfg_dir))

    logger.debug("rbac plan: %d change(s)", len(plan))
    return plan


def _dev_changes(config: RbacConfig, current: Profile, cfg_dir: Path) -> list[Change]:
    changes: list[Change] = []
    for user in config.users:
        if not user.keys:
            changes.append(
                Change(Action.GENERATE, "key", user.login, desc="key for user", user=user.login)
            )

    for user in config.users:
        name = f"{current.name}-user-{user.login}"
        want: dict[str, Any] = {
            "name": name,
            "url": current.url,
            "account": current.act_as_account or current.account,
            "user": user.login,
            "insecure": current.insecure,
        }
        if user.keys:
            want["keyId"] = user.keys[0].fingerprint
        if not profile_exists(cfg_dir, name):
            changes.append(Change(Action.CREATE, "profile", name, want=want, user=user.login))
            continue
        have = load_profile(cfg_dir, name).model_dump(by_alias=True, exclude_none=True)
        diff = default_diff(have, want, [f for f in want if f != "name"])
        if diff:
            changes.append(
                Change(Action.UPDATE, "profile", name, have=have, want=want, diff=diff, user=user.login)
            )
    return changes
