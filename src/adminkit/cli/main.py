"""
AdminKit CLI Main Entry Point.

Every command builds a Job and runs it through the session, which applies
danger mode, confirmation and the audit report.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import click
import humanize
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from adminkit import __version__
from adminkit.core.config import AdminKitConfig, load_config
from adminkit.core.job import Job, JobProgress, JobResult
from adminkit.core.models import (
    AceSpec,
    FileSystemRights,
    ForwardingRule,
    GroupCategory,
    GroupScope,
    GroupSpec,
    ShareRequest,
    TrackPolicy,
)
from adminkit.core.safety import DangerMode, OperationType
from adminkit.core.session import Session
from adminkit.tasks.adgroups import ActiveDirectory, CreateGroupsJob
from adminkit.tasks.dfs import DfsProvisioner, ProvisionShareJob
from adminkit.tasks.exchange import ExchangeOnline
from adminkit.tasks.forwarding import (
    ClearForwardingJob,
    MailboxForwarding,
    SetForwardingJob,
    load_rules,
)
from adminkit.tasks.inventory import LOCAL_HOST, InventoryJob, WmiInventory
from adminkit.tasks.migration import (
    DirectorySync,
    DistributionGroupMigration,
    ExportGroupsJob,
    MigrateGroupsJob,
    MigrationStateStore,
)
from adminkit.tasks.mkv import MkvToolkit, RemuxJob, collect_sources, select_tracks
from adminkit.tasks.ntfs import AclManager, SetAclJob

console = Console()


def get_session(ctx: click.Context) -> Session:
    """Get or create session from context."""
    if "session" not in ctx.obj:
        config = ctx.obj.get("config") or load_config()
        ctx.obj["session"] = Session(config=config)
    return ctx.obj["session"]


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _require_danger_mode(session: Session, operation_name: str) -> None:
    if session.danger_mode == DangerMode.DISABLED:
        console.print(
            f"[red]{operation_name} requires Danger Mode.[/red] "
            "Re-run with --danger-mode and confirm.",
        )
        sys.exit(1)


def _confirm_destructive(session: Session, job: Job[Any], show_plan: bool = True) -> None:
    plan = session.safety.create_execution_plan(
        job.operation_type,
        job.description,
        job.target,
        job.get_plan().splitlines(),
    )
    if show_plan:
        console.print(plan.get_plan_text(), style="yellow", markup=False, highlight=False)
    confirm = click.prompt(
        f"Type '{plan.confirmation_string}' to continue",
        default="",
        show_default=False,
    )
    verified, message = session.safety.verify_confirmation(job.target, confirm, job.id)
    if not verified:
        console.print(f"[red]{message}. Operation cancelled.[/red]")
        sys.exit(1)


def resolve_dry_run(session: Session, dry_run: bool) -> bool:
    return dry_run or session.config.safety.dry_run_default


def run_job(
    ctx: click.Context,
    job: Job[Any],
    dry_run: bool = False,
    title: str | None = None,
) -> JobResult[Any]:
    """Show the plan, enforce the safety gates, run the job and report."""
    session = get_session(ctx)
    json_output = ctx.obj.get("json_output", False)
    quiet = ctx.obj.get("quiet", False)
    dry_run = resolve_dry_run(session, dry_run)

    if not json_output and not quiet:
        heading = "[yellow]DRY RUN - No changes will be made[/yellow]\n\n" if dry_run else ""
        console.print(Panel(heading + job.get_plan(), title=title or job.description))

    if not dry_run and job.operation_type != OperationType.READ_ONLY:
        _require_danger_mode(session, job.description)
        if session.safety.requires_confirmation(job.operation_type):
            _confirm_destructive(session, job, show_plan=not json_output)

    if json_output or quiet:
        result = session.run_job(job, dry_run=dry_run)
    else:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task(job.description, total=100)

            def update_progress(prog: JobProgress) -> None:
                progress.update(
                    task,
                    completed=prog.percentage,
                    description=prog.message or prog.stage or job.description,
                )

            job.context.add_progress_callback(update_progress)
            result = session.run_job(job, dry_run=dry_run)

    if not json_output:
        for warning in result.warnings:
            console.print(f"[yellow]! {warning}[/yellow]")

    if not result.success:
        if json_output:
            echo_json(result.to_dict())
        else:
            console.print(f"[red]✗ {result.error}[/red]")
        sys.exit(1)
    return result


def report_messages(ctx: click.Context, messages: list[str]) -> None:
    if ctx.obj.get("json_output", False):
        echo_json({"success": True, "messages": messages})
        return
    for message in messages:
        console.print(f"[green]✓ {message}[/green]")


# ==================== Adapters ====================


def active_directory(session: Session) -> ActiveDirectory:
    return ActiveDirectory(session.powershell, server=session.config.active_directory.domain_controller)


def acl_manager(session: Session) -> AclManager:
    return AclManager(session.runner, session.poller, session.config.polling)


def exchange_online(session: Session) -> ExchangeOnline:
    return ExchangeOnline(session.powershell, session.config.exchange)


def group_migration(session: Session, run_id: str) -> DistributionGroupMigration:
    config = session.config.migration
    sync = DirectorySync(
        session.powershell,
        session.poller,
        server=config.sync_server,
        attempts=session.config.polling.retry_attempts,
        delay_seconds=session.config.polling.retry_delay_seconds,
    )
    return DistributionGroupMigration(
        exchange_online(session),
        active_directory(session),
        sync,
        MigrationStateStore.for_run(config, run_id),
        session.poller,
        config,
    )


# ==================== Root ====================


@click.group()
@click.version_option(version=__version__, prog_name="AdminKit")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--danger-mode",
    is_flag=True,
    help="Enable danger mode for operations that change anything",
)
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    danger_mode: bool,
    json_output: bool,
    quiet: bool,
) -> None:
    """
    AdminKit - Windows, Active Directory and Exchange Online administration.

    Provisions DFS shares, AD groups and NTFS permissions, sets mailbox
    forwarding, migrates distribution groups and filters mkv tracks.
    """
    ctx.ensure_object(dict)

    if config:
        ctx.obj["config"] = AdminKitConfig.load(config)
    elif "config" not in ctx.obj:
        ctx.obj["config"] = load_config()

    ctx.obj["json_output"] = json_output
    ctx.obj["quiet"] = quiet

    if danger_mode:
        session = get_session(ctx)
        console.print("[yellow]⚠️  Danger mode requested[/yellow]")
        confirm = click.prompt(
            "Type 'I understand the risks' to enable danger mode",
            default="",
        )
        if session.enable_danger_mode(confirm):
            console.print("[red]Danger mode ENABLED[/red]")
        else:
            console.print("[red]Danger mode NOT enabled - incorrect confirmation[/red]")


# ==================== Active Directory ====================


@cli.group("ad")
def ad_group() -> None:
    """Active Directory groups."""


@ad_group.command("create-group")
@click.argument("names", nargs=-1, required=True)
@click.option("--ou", help="Target OU distinguished name (defaults to config)")
@click.option(
    "--scope",
    type=click.Choice(["domainlocal", "global", "universal"], case_sensitive=False),
    default="global",
    show_default=True,
)
@click.option(
    "--category",
    type=click.Choice(["security", "distribution"], case_sensitive=False),
    default="security",
    show_default=True,
)
@click.option("--description", default="", help="Group description")
@click.option("--member", "members", multiple=True, help="Member to add (repeatable)")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def create_group(
    ctx: click.Context,
    names: tuple[str, ...],
    ou: str | None,
    scope: str,
    category: str,
    description: str,
    members: tuple[str, ...],
    dry_run: bool,
) -> None:
    """Create one or more AD groups."""
    session = get_session(ctx)
    dry_run = resolve_dry_run(session, dry_run)
    path = ou if ou is not None else session.config.active_directory.group_ou
    specs = [
        GroupSpec(
            name=name,
            path=path,
            scope=GroupScope.from_string(scope),
            category=GroupCategory(category.capitalize()),
            description=description,
            members=list(members),
        )
        for name in names
    ]
    result = run_job(ctx, CreateGroupsJob(active_directory(session), specs, dry_run=dry_run), dry_run)
    report_messages(ctx, result.data or [])


# ==================== NTFS ====================


def parse_ace(value: str, deny: bool = False, inherit: bool = True) -> AceSpec:
    """Parse PRINCIPAL=RIGHTS, e.g. 'CONTOSO\\FS_Data_M=M'."""
    principal, sep, rights = value.rpartition("=")
    if not sep or not principal:
        raise click.BadParameter(f"Expected PRINCIPAL=RIGHTS, got {value!r}")
    try:
        return AceSpec(principal, FileSystemRights.from_string(rights), inherit=inherit, deny=deny)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


@cli.group("ntfs")
def ntfs_group() -> None:
    """NTFS permissions."""


@ntfs_group.command("grant")
@click.argument("path")
@click.option("--grant", "grants", multiple=True, help="PRINCIPAL=RIGHTS to grant (RX, RW, M, F)")
@click.option("--deny", "denies", multiple=True, help="PRINCIPAL=RIGHTS to deny")
@click.option("--no-inherit", is_flag=True, help="Apply to this folder only")
@click.option("--disable-inheritance", is_flag=True, help="Stop inheriting from the parent")
@click.option("--recurse", is_flag=True, help="Apply to existing children too")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def ntfs_grant(
    ctx: click.Context,
    path: str,
    grants: tuple[str, ...],
    denies: tuple[str, ...],
    no_inherit: bool,
    disable_inheritance: bool,
    recurse: bool,
    dry_run: bool,
) -> None:
    """Grant or deny NTFS permissions on a path."""
    session = get_session(ctx)
    dry_run = resolve_dry_run(session, dry_run)
    aces = [parse_ace(g, inherit=not no_inherit) for g in grants]
    aces += [parse_ace(d, deny=True, inherit=not no_inherit) for d in denies]
    job = SetAclJob(
        acl_manager(session),
        path,
        aces,
        disable_inheritance=disable_inheritance,
        recurse=recurse,
        dry_run=dry_run,
    )
    result = run_job(ctx, job, dry_run)
    report_messages(ctx, [result.data])


@ntfs_group.command("show")
@click.argument("path")
@click.pass_context
def ntfs_show(ctx: click.Context, path: str) -> None:
    """Show the access control entries on a path."""
    session = get_session(ctx)
    entries = acl_manager(session).get(path)

    if ctx.obj.get("json_output", False):
        echo_json([{"principal": p, "permissions": perms} for p, perms in entries])
        return

    table = Table(title=f"Permissions on {path}")
    table.add_column("Principal", style="cyan")
    table.add_column("Permissions", style="green")
    for principal, perms in entries:
        table.add_row(principal, perms)
    console.print(table)


# ==================== DFS ====================


@cli.group("dfs")
def dfs_group() -> None:
    """DFS share provisioning."""


@dfs_group.command("provision")
@click.argument("share_name")
@click.option("--server", help="File server (defaults to config, else this machine)")
@click.option("--base-path", help="Parent folder on the file server, e.g. D:\\Shares")
@click.option("--namespace", "namespace_root", help="Namespace root, e.g. \\\\contoso.com\\files")
@click.option("--link-name", help="DFS link name (defaults to the share name)")
@click.option("--description", default="", help="Share description")
@click.option("--no-groups", is_flag=True, help="Do not create modify/read groups")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def dfs_provision(
    ctx: click.Context,
    share_name: str,
    server: str | None,
    base_path: str | None,
    namespace_root: str | None,
    link_name: str | None,
    description: str,
    no_groups: bool,
    dry_run: bool,
) -> None:
    """Create a folder, its groups and ACL, an SMB share and a DFS link."""
    session = get_session(ctx)
    dry_run = resolve_dry_run(session, dry_run)
    dfs_config = session.config.dfs
    request = ShareRequest(
        share_name=share_name,
        base_path=base_path or dfs_config.share_base_path,
        namespace_root=namespace_root or dfs_config.namespace_root,
        server=server or dfs_config.file_server,
        link_name=link_name,
        description=description,
        create_groups=dfs_config.create_groups and not no_groups,
    )
    provisioner = DfsProvisioner(
        session.powershell,
        session.runner,
        active_directory(session),
        acl_manager(session),
        session.poller,
        session.config.active_directory,
        dfs_config,
    )
    result = run_job(ctx, ProvisionShareJob(provisioner, request, dry_run=dry_run), dry_run)

    if ctx.obj.get("json_output", False):
        echo_json({"request": request.to_dict(), "steps": [s.to_dict() for s in result.data]})
        return

    table = Table(title=f"Provisioning {request.share_name}")
    table.add_column("Step", style="cyan")
    table.add_column("Status", style="yellow")
    table.add_column("Detail", style="white")
    for step in result.data:
        table.add_row(step.name, step.status.value, step.message)
    console.print(table)


# ==================== Mail ====================


@cli.group("mail")
def mail_group() -> None:
    """Exchange Online mailbox forwarding."""


@mail_group.command("forward")
@click.argument("mailbox")
@click.argument("forward_to")
@click.option("--no-copy", is_flag=True, help="Do not keep a copy in the mailbox")
@click.option("--internal", is_flag=True, help="Forward to a recipient object instead of SMTP")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def mail_forward(
    ctx: click.Context,
    mailbox: str,
    forward_to: str,
    no_copy: bool,
    internal: bool,
    dry_run: bool,
) -> None:
    """Forward one mailbox to another address."""
    session = get_session(ctx)
    dry_run = resolve_dry_run(session, dry_run)
    rule = ForwardingRule(mailbox, forward_to, keep_copy=not no_copy, external=not internal)
    job = SetForwardingJob(MailboxForwarding(exchange_online(session)), [rule], dry_run=dry_run)
    result = run_job(ctx, job, dry_run)
    report_messages(ctx, result.data or [])


@mail_group.command("forward-csv")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def mail_forward_csv(ctx: click.Context, csv_path: Path, dry_run: bool) -> None:
    """Apply forwarding rules from a CSV (Mailbox, ForwardTo, KeepCopy, External)."""
    session = get_session(ctx)
    dry_run = resolve_dry_run(session, dry_run)
    try:
        rules = load_rules(csv_path)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    job = SetForwardingJob(MailboxForwarding(exchange_online(session)), rules, dry_run=dry_run)
    result = run_job(ctx, job, dry_run)
    report_messages(ctx, result.data or [])


@mail_group.command("show")
@click.argument("mailboxes", nargs=-1, required=True)
@click.pass_context
def mail_show(ctx: click.Context, mailboxes: tuple[str, ...]) -> None:
    """Show the forwarding configuration of mailboxes."""
    session = get_session(ctx)
    forwarding = MailboxForwarding(exchange_online(session))

    with console.status("Querying Exchange Online..."):
        states = {mailbox: forwarding.get(mailbox) for mailbox in mailboxes}

    if ctx.obj.get("json_output", False):
        echo_json({m: s.to_dict() if s else None for m, s in states.items()})
        return

    table = Table(title="Mailbox Forwarding")
    table.add_column("Mailbox", style="cyan")
    table.add_column("Forwarding To", style="green")
    table.add_column("Keep Copy", style="yellow")
    for mailbox, state in states.items():
        if state is None:
            table.add_row(mailbox, "[red]not found[/red]", "")
            continue
        target = state.forwarding_smtp_address or state.forwarding_address or "-"
        keep = "Yes" if state.deliver_to_mailbox_and_forward else "No"
        table.add_row(state.mailbox, target, keep if state.is_forwarding else "")
    console.print(table)


@mail_group.command("clear")
@click.argument("mailboxes", nargs=-1, required=True)
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def mail_clear(ctx: click.Context, mailboxes: tuple[str, ...], dry_run: bool) -> None:
    """Remove forwarding from mailboxes."""
    session = get_session(ctx)
    dry_run = resolve_dry_run(session, dry_run)
    job = ClearForwardingJob(MailboxForwarding(exchange_online(session)), list(mailboxes), dry_run=dry_run)
    result = run_job(ctx, job, dry_run)
    report_messages(ctx, result.data or [])


# ==================== Matroska ====================


def track_policy(
    session: Session,
    audio: tuple[str, ...],
    subtitles: tuple[str, ...],
    keep_commentary: bool,
    keep_duplicates: bool,
) -> TrackPolicy:
    mkv_config = session.config.mkv
    return TrackPolicy(
        audio_languages=list(audio) or list(mkv_config.audio_languages),
        subtitle_languages=list(subtitles) or list(mkv_config.subtitle_languages),
        keep_forced_subtitles=mkv_config.keep_forced_subtitles,
        drop_commentary=mkv_config.drop_commentary and not keep_commentary,
        drop_duplicates=mkv_config.drop_duplicates and not keep_duplicates,
    )


def policy_options(func: Any) -> Any:
    func = click.option("--keep-duplicates", is_flag=True, help="Keep identical tracks")(func)
    func = click.option("--keep-commentary", is_flag=True, help="Keep commentary tracks")(func)
    func = click.option(
        "--subtitles", "subtitles", multiple=True, help="Subtitle language to keep (repeatable)"
    )(func)
    func = click.option("--audio", "audio", multiple=True, help="Audio language to keep (repeatable)")(func)
    return func


def mkv_toolkit(session: Session) -> MkvToolkit:
    mkv_config = session.config.mkv
    return MkvToolkit(session.runner, mkv_config.mkvmerge_path, timeout=mkv_config.timeout_seconds)


@cli.group("mkv")
def mkv_group() -> None:
    """Matroska track filtering."""


@mkv_group.command("inspect")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@policy_options
@click.pass_context
def mkv_inspect(
    ctx: click.Context,
    path: Path,
    audio: tuple[str, ...],
    subtitles: tuple[str, ...],
    keep_commentary: bool,
    keep_duplicates: bool,
) -> None:
    """List the tracks of a file and what the policy would keep."""
    session = get_session(ctx)
    tracks = mkv_toolkit(session).identify(path)
    plan = select_tracks(tracks, track_policy(session, audio, subtitles, keep_commentary, keep_duplicates))

    if ctx.obj.get("json_output", False):
        echo_json({"tracks": [t.to_dict() for t in tracks], "plan": plan.to_dict()})
        return

    reasons = {r.track.id: r.reason for r in plan.removed}
    table = Table(title=f"{path.name} ({humanize.naturalsize(path.stat().st_size, binary=True)})")
    table.add_column("#", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Codec", style="white")
    table.add_column("Lang", style="yellow")
    table.add_column("Name", style="white")
    table.add_column("Flags", style="magenta")
    table.add_column("Action", style="green")
    for track in tracks:
        flags = ", ".join(f for f, on in (("default", track.default), ("forced", track.forced)) if on)
        action = f"[red]remove: {reasons[track.id]}[/red]" if track.id in reasons else "keep"
        table.add_row(
            str(track.id),
            track.type.value,
            track.codec,
            track.language,
            track.name,
            flags,
            action,
        )
    console.print(table)
    for warning in plan.warnings:
        console.print(f"[yellow]! {warning}[/yellow]")


@mkv_group.command("remux")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option("--output-dir", type=click.Path(file_okay=False, path_type=Path), help="Where to write output")
@click.option("--suffix", help="Suffix added to output names (defaults to config)")
@click.option("--recursive", "-r", is_flag=True, help="Search directories recursively")
@policy_options
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def mkv_remux(
    ctx: click.Context,
    path: Path,
    output_dir: Path | None,
    suffix: str | None,
    recursive: bool,
    audio: tuple[str, ...],
    subtitles: tuple[str, ...],
    keep_commentary: bool,
    keep_duplicates: bool,
    dry_run: bool,
) -> None:
    """Remux files keeping only the wanted audio and subtitle tracks."""
    session = get_session(ctx)
    dry_run = resolve_dry_run(session, dry_run)
    if suffix is None:
        suffix = session.config.mkv.output_suffix
    job = RemuxJob(
        mkv_toolkit(session),
        collect_sources(path, recursive=recursive, output_suffix=suffix),
        track_policy(session, audio, subtitles, keep_commentary, keep_duplicates),
        output_dir=output_dir,
        suffix=suffix,
        dry_run=dry_run,
        preflight=session.config.safety.preflight_checks_enabled,
    )
    result = run_job(ctx, job, dry_run)

    if ctx.obj.get("json_output", False):
        echo_json([o.to_dict() for o in result.data])
        return

    table = Table(title="Remux Results")
    table.add_column("File", style="cyan")
    table.add_column("Removed", style="yellow")
    table.add_column("Output", style="green")
    table.add_column("Result", style="white")
    for outcome in result.data:
        removed = str(len(outcome.plan.removed)) if outcome.plan else "-"
        output = ""
        if outcome.output is not None and outcome.output.exists():
            output = f"{outcome.output.name} ({humanize.naturalsize(outcome.output.stat().st_size, binary=True)})"
        status = f"[green]{outcome.message}[/green]" if outcome.success else f"[red]{outcome.message}[/red]"
        table.add_row(outcome.source.name, removed, output, status)
    console.print(table)


# ==================== Migration ====================


def default_run_id() -> str:
    return datetime.now().strftime("migration_%Y%m%d_%H%M%S")


def print_migration_state(ctx: click.Context, migration: DistributionGroupMigration) -> None:
    state = migration.state
    if ctx.obj.get("json_output", False):
        click.echo(state.model_dump_json(indent=2))
        return

    table = Table(title=f"Migration {state.run_id}")
    table.add_column("Group", style="cyan")
    table.add_column("Address", style="white")
    table.add_column("Members", style="dim")
    table.add_column("Phase", style="yellow")
    table.add_column("Error", style="red")
    for group in state.groups.values():
        snapshot = group.snapshot
        table.add_row(
            group.name,
            snapshot.primary_smtp_address if snapshot else "",
            str(len(snapshot.members)) if snapshot else "",
            group.phase.value,
            group.error or "",
        )
    console.print(table)
    console.print(f"State file: {migration.store.path}")


@cli.group("migrate")
def migrate_group() -> None:
    """Move synchronized distribution groups to Exchange Online."""


@migrate_group.command("export")
@click.argument("names", nargs=-1, required=True)
@click.option("--run-id", help="State file name (defaults to a timestamp)")
@click.pass_context
def migrate_export(ctx: click.Context, names: tuple[str, ...], run_id: str | None) -> None:
    """Snapshot groups without changing anything."""
    session = get_session(ctx)
    migration = group_migration(session, run_id or default_run_id())
    run_job(ctx, ExportGroupsJob(migration, list(names)))
    print_migration_state(ctx, migration)


@migrate_group.command("run")
@click.argument("names", nargs=-1)
@click.option("--run-id", help="Resume the run with this id (defaults to a new one)")
@click.option("--dry-run", is_flag=True, help="Export and show the plan only")
@click.pass_context
def migrate_run(ctx: click.Context, names: tuple[str, ...], run_id: str | None, dry_run: bool) -> None:
    """Export, remove, sync and recreate groups; rerun to resume."""
    session = get_session(ctx)
    dry_run = resolve_dry_run(session, dry_run)
    migration = group_migration(session, run_id or default_run_id())
    job = MigrateGroupsJob(migration, list(names), dry_run=dry_run)
    run_job(ctx, job, dry_run, title="Distribution Group Migration")

    if dry_run and not ctx.obj.get("json_output", False):
        console.print(Panel("\n".join(migration.describe()) or "Nothing to do", title="Groups"))
        return
    print_migration_state(ctx, migration)


@migrate_group.command("status")
@click.argument("run_id")
@click.pass_context
def migrate_status(ctx: click.Context, run_id: str) -> None:
    """Show the recorded state of a migration run."""
    session = get_session(ctx)
    migration = group_migration(session, run_id)
    if not migration.store.exists():
        console.print(f"[red]No migration state at {migration.store.path}[/red]")
        sys.exit(1)

    print_migration_state(ctx, migration)
    if not ctx.obj.get("json_output", False):
        summary = migration.state.summary()
        console.print(", ".join(f"{phase}: {count}" for phase, count in summary.items() if count))


# ==================== Inventory ====================


@cli.command("inventory")
@click.argument("hosts", nargs=-1)
@click.pass_context
def inventory(ctx: click.Context, hosts: tuple[str, ...]) -> None:
    """Collect OS, hardware and disk facts over CIM."""
    session = get_session(ctx)
    result = run_job(ctx, InventoryJob(WmiInventory(session.powershell), list(hosts) or [LOCAL_HOST]))

    if ctx.obj.get("json_output", False):
        echo_json([item.to_dict() for item in result.data])
        return

    for item in result.data:
        memory = humanize.naturalsize(item.memory_bytes, binary=True) if item.memory_bytes else "Unknown"
        console.print(
            Panel(
                f"""[cyan]OS:[/cyan] {item.os_caption or "Unknown"} {item.os_version or ""}
[cyan]Last Boot:[/cyan] {item.last_boot or "Unknown"}
[cyan]Hardware:[/cyan] {item.manufacturer or ""} {item.model or ""}
[cyan]Memory:[/cyan] {memory}""",
                title=item.host,
            )
        )
        if item.disks:
            table = Table(title=f"Disks on {item.host}")
            table.add_column("Drive", style="cyan")
            table.add_column("Label", style="white")
            table.add_column("Size", style="green")
            table.add_column("Free", style="green")
            table.add_column("Used", style="yellow")
            for disk in item.disks:
                table.add_row(
                    disk.device_id,
                    disk.volume_name,
                    humanize.naturalsize(disk.size_bytes, binary=True),
                    humanize.naturalsize(disk.free_bytes, binary=True),
                    f"{disk.used_percent:.0f}%",
                )
            console.print(table)


def main() -> None:
    """Main entry point."""
    obj: dict[str, Any] = {}
    try:
        try:
            cli(obj=obj, standalone_mode=False)
        finally:
            if "session" in obj:
                obj["session"].close()
    except click.exceptions.Abort:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
