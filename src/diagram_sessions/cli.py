"""CLI interface for diagram-sessions."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path

import click

from . import __version__
from .adapters import LocalStorageAdapter
from .config import ANONYMOUS_USER_ID, REMOTE_URL, SQLITE_PATH, STORE_QUOTA_BYTES
from .local_store import LocalConversationStore
from .messages import display_title
from .outbox import Outbox
from .storage import SQLiteKeyValueStore


def _fmt_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _store(ctx: click.Context) -> LocalConversationStore:
    return ctx.obj["store"]


def _require_conversation(store: LocalConversationStore, conversation_id: str):
    meta = store.get_meta(conversation_id)
    if meta is None:
        raise click.ClickException(f"No conversation {conversation_id} for user {store.user_id}")
    return meta


@click.group()
@click.version_option(version=__version__, prog_name="diagram-sessions")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=SQLITE_PATH,
    show_default=True,
    help="SQLite store to operate on",
)
@click.option("--user", "user_id", default=ANONYMOUS_USER_ID, show_default=True, help="User scope")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging on stderr")
@click.pass_context
def cli(ctx: click.Context, db_path: Path, user_id: str, verbose: bool):
    """diagram-sessions: inspect and maintain locally persisted diagram conversations."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    kv = SQLiteKeyValueStore(db_path, quota_bytes=STORE_QUOTA_BYTES)
    ctx.call_on_close(kv.close)
    ctx.obj = {"store": LocalConversationStore(kv, user_id)}


@cli.command("list")
@click.pass_context
def list_cmd(ctx: click.Context):
    """List conversations, most recently updated first."""
    store = _store(ctx)
    metas = sorted(store.read_metas(), key=lambda m: m.updated_at, reverse=True)
    if not metas:
        click.echo("No conversations.")
        return
    current = store.read_current_id()
    for meta in metas:
        marker = "*" if meta.id == current else " "
        click.echo(f"{marker} {meta.id}  {_fmt_ms(meta.updated_at)}  {display_title(metas, meta.id)}")


@cli.command()
@click.argument("conversation_id")
@click.option("--json", "as_json", is_flag=True, help="Print the stored record as JSON")
@click.pass_context
def show(ctx: click.Context, conversation_id: str, as_json: bool):
    """Show one conversation."""
    store = _store(ctx)
    meta = _require_conversation(store, conversation_id)
    payload = store.read_payload(conversation_id)

    if as_json:
        record = {"meta": meta.to_record(), "payload": payload.to_record() if payload else None}
        click.echo(json.dumps(record, indent=2, ensure_ascii=False))
        return

    click.echo()
    click.echo(click.style(meta.title or conversation_id, bold=True))
    click.echo(f"  Created:   {_fmt_ms(meta.created_at)}")
    click.echo(f"  Updated:   {_fmt_ms(meta.updated_at)}")
    if payload is None:
        click.echo("  Payload:   not cached locally")
        click.echo()
        return
    click.echo(f"  Session:   {payload.session_id}")
    click.echo(f"  Messages:  {len(payload.messages):,}")
    click.echo(f"  Diagram:   {len(payload.xml):,} chars")
    click.echo(f"  Versions:  {len(payload.diagram_versions)} (cursor {payload.diagram_version_cursor})")
    click.echo()


@cli.command()
@click.argument("conversation_id")
@click.pass_context
def history(ctx: click.Context, conversation_id: str):
    """Show the diagram version history of a conversation."""
    store = _store(ctx)
    _require_conversation(store, conversation_id)
    payload = store.read_payload(conversation_id)
    if payload is None or not payload.diagram_versions:
        click.echo("No diagram versions.")
        return

    marked: dict[int, list[int]] = {}
    for message_index, version_index in sorted(payload.diagram_version_marks.items()):
        marked.setdefault(version_index, []).append(message_index)

    for idx, version in enumerate(payload.diagram_versions):
        cursor = ">" if idx == payload.diagram_version_cursor else " "
        line = f"{cursor} {idx:>3}  {version.id}  {_fmt_ms(version.created_at)}  {len(version.xml):,} chars"
        if version.note:
            line += f"  {version.note}"
        if idx in marked:
            line += "  [messages " + ", ".join(str(m) for m in marked[idx]) + "]"
        click.echo(line)


@cli.command()
@click.argument("conversation_id")
@click.argument("title")
@click.pass_context
def rename(ctx: click.Context, conversation_id: str, title: str):
    """Set a conversation's title."""
    store = _store(ctx)
    _require_conversation(store, conversation_id)
    title = title.strip()
    if not title:
        raise click.BadParameter("Title must not be empty", param_hint="TITLE")
    LocalStorageAdapter(store, push_hook=_outbox_hook(store)).update_title(conversation_id, title)
    click.echo(f"Renamed {conversation_id} to {title!r}")


@cli.command()
@click.argument("conversation_id")
@click.pass_context
def delete(ctx: click.Context, conversation_id: str):
    """Delete a conversation (queued as a tombstone for signed-in users)."""
    store = _store(ctx)
    _require_conversation(store, conversation_id)
    LocalStorageAdapter(store, push_hook=_outbox_hook(store)).delete_conversation(conversation_id)
    if store.read_current_id() == conversation_id:
        store.write_current_id("")
    click.echo(f"Deleted {conversation_id}")


def _outbox_hook(store: LocalConversationStore):
    if store.user_id == ANONYMOUS_USER_ID:
        return None
    outbox = Outbox(store)

    def hook(conversation_id: str, deleted: bool = False, immediate: bool = False):
        outbox.enqueue(conversation_id, deleted=deleted)

    return hook


@cli.command()
@click.option("--signed-in/--anonymous", default=None, help="Cache quota to report against")
@click.pass_context
def stats(ctx: click.Context, signed_in: bool | None):
    """Show local cache statistics."""
    store = _store(ctx)
    authenticated = signed_in if signed_in is not None else store.user_id != ANONYMOUS_USER_ID
    s = store.cache_stats(authenticated)

    click.echo()
    click.echo(click.style(f"Local cache for {store.user_id}", bold=True))
    click.echo(f"  Conversations:  {s['cached']:,} / {s['quota']:,} ({s['usage_percentage']:.0f}%)")
    click.echo(f"  Stale:          {s['stale_count']:,}")
    click.echo(f"  Pending pushes: {len(store.read_outbox()):,}")
    click.echo(f"  Storage:        {s['bytes_used'] / (1024 * 1024):.1f} MB")
    if store.should_cleanup(authenticated):
        click.echo(click.style("  Cache is near its quota, run `diagram-sessions cleanup`", fg="yellow"))
    click.echo()


@cli.command()
@click.option("--signed-in/--anonymous", default=None, help="Cache quota to enforce")
@click.pass_context
def cleanup(ctx: click.Context, signed_in: bool | None):
    """Drop stale payloads and enforce the cache quota."""
    store = _store(ctx)
    authenticated = signed_in if signed_in is not None else store.user_id != ANONYMOUS_USER_ID
    result = store.smart_cleanup(authenticated)
    click.echo(
        f"Removed {result['stale_removed']} stale payloads and "
        f"{result['quota_removed']} conversations over quota"
    )


@cli.command()
@click.option("--remote", "remote_url", default=REMOTE_URL, help="Base URL of the conversation service")
@click.option("--token", envvar="DIAGRAM_SESSIONS_TOKEN", default=None, help="Bearer token for the service")
@click.option("--all", "push_all", is_flag=True, help="Queue every cached conversation before pushing")
@click.pass_context
def push(ctx: click.Context, remote_url: str, token: str | None, push_all: bool):
    """Push pending changes to the remote conversation service."""
    if not remote_url:
        raise click.UsageError("No remote configured. Pass --remote or set DIAGRAM_SESSIONS_REMOTE_URL.")

    from .reconciler import SyncReconciler
    from .remote import HttpRemoteStore

    store = _store(ctx)
    headers = {"Authorization": f"Bearer {token}"} if token else None
    reconciler = SyncReconciler(store, HttpRemoteStore(remote_url, headers=headers), push_delay=0)
    if push_all:
        for meta in store.read_metas():
            reconciler.outbox.enqueue(meta.id)

    pending = len(reconciler.outbox)
    if not pending:
        click.echo("Nothing to push.")
        return
    ok = asyncio.run(reconciler.flush())
    if not ok:
        click.echo(click.style(f"Push failed, {len(reconciler.outbox)} entries kept for retry", fg="red"), err=True)
        ctx.exit(1)
    click.echo(f"Pushed {pending} conversations")


@cli.command()
@click.confirmation_option(prompt="This will delete all local conversations for this user. Are you sure?")
@click.pass_context
def reset(ctx: click.Context):
    """Delete every local record for the user."""
    store = _store(ctx)
    removed = store.reset()
    if removed:
        click.echo(f"Deleted {removed} records for {store.user_id}")
    else:
        click.echo("No data to delete.")
