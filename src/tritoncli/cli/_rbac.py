"""triton rbac — inspect and reconcile RBAC users, keys, policies and roles."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console

from tritoncli.cloudapi.bulk import poll_until, run_bulk
from tritoncli.core.constants import DEFAULT_RBAC_CONFIG_FILENAME
from tritoncli.core.exceptions import UsageError
from tritoncli.core.prompt import Outcome, confirm
from tritoncli.rbac.executor import RbacExecutor, confirm_plan
from tritoncli.rbac.model import RbacConfig, load_rbac_config
from tritoncli.rbac.planner import Change, create_rbac_update_plan
from tritoncli.rbac.state import load_rbac_state

if TYPE_CHECKING:
    from tritoncli.cli.main import CliContext


def _plural(n: int, word: str, plural: str | None = None) -> str:
    return f"{n} {word if n == 1 else (plural or word + 's')}"


# ---------------------------------------------------------------------------
# info
# ---------------------------------------------------------------------------


def cmd_rbac_info(cli_ctx: CliContext, as_json: bool, console: Console) -> None:
    state = load_rbac_state(cli_ctx.cloudapi())
    if as_json:
        print(json.dumps({"users": state.users, "policies": state.policies, "roles": state.roles}, indent=4))
        return

    def p(line: str = "") -> None:
        console.print(line, markup=False, highlight=False)

    p(f"{_plural(len(state.users), 'user')} ({', '.join(u['login'] for u in state.users) or 'none'})")
    for user in sorted(state.users, key=lambda u: u["login"]):
        keys = user.get("keys") or []
        roles = ", ".join(user.get("roles") or []) or "-"
        p(f"    {user['login']}: {_plural(len(keys), 'key')}; roles: {roles}")
    p(_plural(len(state.policies), "policy", "policies"))
    for policy in sorted(state.policies, key=lambda x: x["name"]):
        p(f"    {policy['name']}: {_plural(len(policy.get('rules') or []), 'rule')}")
        for rule in policy.get("rules") or []:
            p(f"        {rule}")
    p(_plural(len(state.roles), "role"))
    for role in sorted(state.roles, key=lambda x: x["name"]):
        p(
            f"    {role['name']}: members: {', '.join(role.get('members') or []) or '-'}; "
            f"policies: {', '.join(role.get('policies') or []) or '-'}"
        )


# ---------------------------------------------------------------------------
# apply / reset
# ---------------------------------------------------------------------------


def _reconcile(
    cli_ctx: CliContext,
    config: RbacConfig,
    dry_run: bool,
    yes: bool,
    console: Console,
    dev_create_keys_and_profiles: bool = False,
    wait: bool = False,
) -> Outcome:
    cloudapi = cli_ctx.cloudapi()
    current = cli_ctx.profile()
    state = load_rbac_state(cloudapi)
    plan = create_rbac_update_plan(
        config,
        state,
        dev_create_keys_and_profiles=dev_create_keys_and_profiles,
        current_profile=current,
        cfg_dir=cli_ctx.cfg_dir,
    )
    if not plan:
        console.print("RBAC config is up-to-date.")
        return Outcome.DONE

    if confirm_plan(plan, console, dry_run=dry_run, yes=yes) is Outcome.ABORTED:
        return Outcome.ABORTED

    executor = RbacExecutor(
        cloudapi,
        config,
        console,
        dry_run=dry_run,
        cfg_dir=cli_ctx.cfg_dir,
        current_profile=current,
    )
    executor.execute(plan)

    if wait and not dry_run:

        def replan() -> list[Change]:
            return create_rbac_update_plan(config, load_rbac_state(cloudapi))

        poll_until(replan, lambda remaining: not remaining, what="RBAC state to match the config")
        console.print("RBAC state matches the config.")
    return Outcome.DONE


def cmd_rbac_apply(
    cli_ctx: CliContext,
    file: str | None,
    dry_run: bool,
    yes: bool,
    dev_create_keys_and_profiles: bool,
    wait: bool,
    console: Console,
) -> None:
    path = Path(file) if file else Path.cwd() / DEFAULT_RBAC_CONFIG_FILENAME
    config = load_rbac_config(path, cli_ctx.cfg_dir)
    _reconcile(
        cli_ctx,
        config,
        dry_run,
        yes,
        console,
        dev_create_keys_and_profiles=dev_create_keys_and_profiles,
        wait=wait,
    )


def cmd_rbac_reset(cli_ctx: CliContext, dry_run: bool, yes: bool, console: Console) -> None:
    """Reconcile against an empty config: every user, policy and role is deleted."""
    _reconcile(cli_ctx, RbacConfig(), dry_run, yes, console)


# ---------------------------------------------------------------------------
# bulk deletes
# ---------------------------------------------------------------------------


def cmd_rbac_user_delete(cli_ctx: CliContext, logins: list[str], yes: bool, console: Console) -> None:
    if not yes:
        what = f'user "{logins[0]}"' if len(logins) == 1 else f"{len(logins)} users ({', '.join(logins)})"
        if not confirm(console, f"Delete {what}?"):
            console.print("Aborting")
            sys.exit(1)
    cloudapi = cli_ctx.cloudapi()
    run_bulk(
        cloudapi.delete_user,
        logins,
        on_success=lambda login, _: console.print(f"Deleted user {login}", markup=False),
    )


def cmd_rbac_key_delete(cli_ctx: CliContext, user: str, fingerprints: list[str], yes: bool, console: Console) -> None:
    if not yes:
        if not confirm(console, f'Delete {_plural(len(fingerprints), "key")} of user "{user}"?'):
            console.print("Aborting")
            sys.exit(1)
    cloudapi = cli_ctx.cloudapi()
    run_bulk(
        lambda fp: cloudapi.delete_user_key(user, fp),
        fingerprints,
        on_success=lambda fp, _: console.print(f"Deleted user {user} key {fp}", markup=False),
    )


# ---------------------------------------------------------------------------
# role-tags
# ---------------------------------------------------------------------------


def cmd_rbac_role_tags(cli_ctx: CliContext, resource: str, tags: list[str], clear: bool, console: Console) -> None:
    if clear and tags:
        raise UsageError("cannot give role tags with --clear")
    if not clear and not tags:
        raise UsageError("give one or more role tags, or --clear to remove them all")
    result = cli_ctx.cloudapi().set_role_tags(resource, [] if clear else tags)
    if result:
        console.print(f"Set role tags on {resource}: {', '.join(result)}", markup=False)
    else:
        console.print(f"Cleared role tags on {resource}", markup=False)
