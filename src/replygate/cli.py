"""ReplyGate CLI - Typer app with all subcommands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="replygate",
    help="Support inbox triage - classify, route and safely auto-reply to customer email.",
    no_args_is_help=True,
)

ACCOUNT_OPTION = typer.Option("default", "--account", "-a", help="Account (mailbox) id.")


def _open_store(config):
    from replygate.database import get_db, init_db
    from replygate.store import Store

    conn = get_db(config)
    init_db(conn)
    return Store(conn)


def _setup():
    """Load config, configure logging and open the store."""
    from replygate.app_logging import configure_logging
    from replygate.config import load_config

    config = load_config()
    configure_logging(config.logging)
    return config, _open_store(config)


# --- Database commands ---

db_app = typer.Typer(help="Database management commands.")
app.add_typer(db_app, name="db")


@db_app.callback(invoke_without_command=True)
def db_callback(
    ctx: typer.Context,
    reset: bool = typer.Option(False, "--reset", help="Wipe and recreate the database."),
    stats: bool = typer.Option(False, "--stats", help="Show row counts for all tables."),
    migrate: bool = typer.Option(False, "--migrate", help="Run pending schema migrations."),
):
    """Database management."""
    from replygate.config import load_config
    from replygate.database import db_stats, get_db, init_db, migrate_db, reset_db

    config = load_config()

    if reset:
        conn = reset_db(config)
        typer.echo("Database reset and initialized.")
        conn.close()
        return

    if stats:
        conn = get_db(config)
        init_db(conn)
        s = db_stats(conn)
        typer.echo("Table row counts:")
        for table, count in s.items():
            status = f"{count}" if count >= 0 else "missing"
            typer.echo(f"  {table:30s} {status}")
        conn.close()
        return

    if migrate:
        conn = get_db(config)
        init_db(conn)
        applied = migrate_db(conn)
        typer.echo(f"Schema migrations applied: {len(applied)}.")
        for change in applied:
            typer.echo(f"  {change}")
        conn.close()
        return

    typer.echo(ctx.get_help())


# --- Knowledge base commands ---

kb_app = typer.Typer(help="Knowledge base used to ground classification and replies.")
app.add_typer(kb_app, name="kb")


def _grounding_engine(config, store):
    from replygate.ai import get_embedding_provider
    from replygate.stages.grounding import GroundingEngine

    return GroundingEngine(
        store,
        get_embedding_provider(config.ai.to_provider_dict()),
        config.ai.embedding_model,
        config.grounding,
    )


@kb_app.command("add")
def kb_add(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text file to index."),
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Source name or URL."),
    account: str = ACCOUNT_OPTION,
):
    """Index a document for an account."""
    from replygate.errors import GroundingUnavailable

    config, store = _setup()
    engine = _grounding_engine(config, store)
    try:
        count = engine.index_document(account, source or path.name, path.read_text())
    except GroundingUnavailable as e:
        typer.echo(f"Chunks stored but not embedded: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Indexed {count} chunks from {source or path.name}.")


@kb_app.command("search")
def kb_search(
    query: str = typer.Argument(..., help="Text to search for."),
    quality: Optional[str] = typer.Option(None, "--quality", "-q", help="high, balanced or exploratory."),
    account: str = ACCOUNT_OPTION,
):
    """Show the sources that would ground a message."""
    config, store = _setup()
    result = _grounding_engine(config, store).search(account, query, quality=quality)
    typer.echo(
        f"Threshold {result.threshold:.2f}: {len(result.sources)} of "
        f"{result.total_sources} sources accepted."
    )
    for s in result.sources:
        typer.echo(f"  {s.similarity:.3f}  {s.source}  {s.chunk[:80]}")


@kb_app.command("clear-cache")
def kb_clear_cache(account: str = ACCOUNT_OPTION):
    """Drop stored chunk embeddings so they are recomputed on next search."""
    _, store = _setup()
    count = store.clear_chunk_embeddings(account)
    typer.echo(f"Cleared {count} cached embeddings.")


# --- Automation rules ---

rules_app = typer.Typer(help="Automation rules per category.")
app.add_typer(rules_app, name="rules")


@rules_app.command("add")
def rules_add(
    name: str = typer.Argument(..., help="Rule name."),
    category: str = typer.Option(..., "--category", "-c", help="Category the rule handles."),
    refund_type: Optional[str] = typer.Option(None, "--refund-type", help="percentage or fixed_amount."),
    refund_value: Optional[float] = typer.Option(None, "--refund-value", help="Fraction (0.2) or amount."),
    refund_cap: Optional[float] = typer.Option(None, "--refund-cap", help="Maximum refund amount."),
    inactive: bool = typer.Option(False, "--inactive", help="Create the rule disabled."),
    account: str = ACCOUNT_OPTION,
):
    """Add an automation rule."""
    from replygate.models import Category

    try:
        parsed = Category.parse(category)
    except ValueError:
        typer.echo(f"Unknown category: {category}", err=True)
        raise typer.Exit(1)
    if refund_type not in (None, "percentage", "fixed_amount"):
        typer.echo("refund type must be percentage or fixed_amount", err=True)
        raise typer.Exit(1)

    _, store = _setup()
    rule_id = store.add_rule(
        account, name, parsed, is_active=not inactive,
        refund_type=refund_type, refund_value=refund_value, refund_cap=refund_cap,
    )
    typer.echo(f"Rule {rule_id} added: {name} ({parsed.value}).")


@rules_app.command("list")
def rules_list(account: str = ACCOUNT_OPTION):
    """List automation rules."""
    _, store = _setup()
    rules = store.list_rules(account)
    if not rules:
        typer.echo("No rules configured.")
        return
    for r in rules:
        state = "active" if r.is_active else "inactive"
        typer.echo(
            f"  [{r.id}] {r.name:30s} {r.category.value:20s} {state:8s} "
            f"triggered {r.trigger_count}x"
        )


# --- Account settings ---

settings_app = typer.Typer(help="Per-account settings.")
app.add_typer(settings_app, name="settings")

_SETTING_FIELDS = {
    "company_name": str,
    "approval_required": bool,
    "empathy_level": int,
    "signature": str,
    "loyal_customer_greeting": bool,
    "grounding_quality": str,
    "brand_guidelines": str,
    "forbidden_phrases": list,
    "high_value_customers": list,
}


@settings_app.command("show")
def settings_show(account: str = ACCOUNT_OPTION):
    """Show account settings."""
    from dataclasses import asdict

    _, store = _setup()
    typer.echo(json.dumps(asdict(store.get_settings(account)), indent=2))


@settings_app.command("set")
def settings_set(
    key: str = typer.Argument(..., help=f"One of: {', '.join(_SETTING_FIELDS)}"),
    value: str = typer.Argument(..., help="New value; lists are comma-separated."),
    account: str = ACCOUNT_OPTION,
):
    """Change one account setting."""
    if key not in _SETTING_FIELDS:
        typer.echo(f"Unknown setting: {key}", err=True)
        raise typer.Exit(1)

    kind = _SETTING_FIELDS[key]
    if kind is bool:
        parsed = value.strip().lower() in ("1", "true", "yes", "on")
    elif kind is int:
        parsed = int(value)
    elif kind is list:
        parsed = [v.strip() for v in value.split(",") if v.strip()]
    else:
        parsed = value

    if key == "empathy_level" and not 1 <= parsed <= 5:
        typer.echo("empathy_level must be between 1 and 5", err=True)
        raise typer.Exit(1)
    if key == "grounding_quality":
        from replygate.stages.grounding import THRESHOLDS

        if parsed not in THRESHOLDS:
            typer.echo(f"grounding_quality must be one of: {', '.join(THRESHOLDS)}", err=True)
            raise typer.Exit(1)

    _, store = _setup()
    settings = store.get_settings(account)
    if key == "brand_guidelines":
        settings.brand_voice.guidelines = parsed
    elif key == "forbidden_phrases":
        settings.brand_voice.forbidden_phrases = parsed
    else:
        setattr(settings, key, parsed)
    store.save_settings(settings)
    typer.echo(f"{key} updated.")


# --- Processing ---

def _print_result(result) -> None:
    line = f"  {result.external_id}: {result.status.value}"
    if result.duplicate:
        line += " (duplicate, skipped)"
    elif result.category:
        line += f" [{result.category.value}, {result.confidence}%]"
    if result.reason and not result.duplicate:
        line += f" - {result.reason}"
    typer.echo(line)


@app.command()
def process(
    path: Path = typer.Argument(..., exists=True, dir_okay=False,
                                help="JSON file with one email object or a list of them."),
    account: str = ACCOUNT_OPTION,
):
    """Process emails from a JSON file (manual ingestion)."""
    from replygate.ingest import Ingestor, collect
    from replygate.pipeline import build_pipeline

    config, store = _setup()
    payload = json.loads(path.read_text())
    items = payload if isinstance(payload, list) else [payload]

    with Ingestor(build_pipeline(config, store), config.ingest.max_workers) as ingestor:
        results = collect([ingestor.submit_manual(account, item) for item in items])
    typer.echo(f"Processed {len(results)} of {len(items)} emails:")
    for result in results:
        _print_result(result)


@app.command()
def connect(account: str = ACCOUNT_OPTION):
    """Authorize the account's Gmail mailbox (opens a browser)."""
    from replygate.config import load_config
    from replygate.gmail.auth import connect_mailbox

    config = load_config()
    try:
        token_file = connect_mailbox(config.gmail, account)
    except FileNotFoundError as e:
        typer.echo(f"{e}. Download OAuth credentials from Google Cloud Console.", err=True)
        raise typer.Exit(1)
    typer.echo(f"Mailbox for {account} connected; token saved to {token_file}.")


@app.command()
def sync(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Gmail search query."),
    account: str = ACCOUNT_OPTION,
):
    """Catch up on recent mail from the account's Gmail mailbox."""
    from replygate.gmail.auth import get_gmail_service, get_user_email
    from replygate.gmail.client import GmailClient
    from replygate.ingest import Ingestor
    from replygate.pipeline import build_pipeline

    config, store = _setup()
    typer.echo("Authenticating with Gmail...")
    service = get_gmail_service(config.gmail, account)
    user_email = get_user_email(service)
    typer.echo(f"Authenticated as: {user_email}")

    client = GmailClient(service, user_email)
    search_query = query or config.gmail.catch_up_query
    with Ingestor(build_pipeline(config, store), config.ingest.max_workers) as ingestor:
        results = ingestor.catch_up(account, client, search_query)
    typer.echo(f"Catch-up complete: {len(results)} messages.")
    for result in results:
        _print_result(result)


# --- Approval queue ---

approvals_app = typer.Typer(help="Draft replies waiting for review.")
app.add_typer(approvals_app, name="approvals")


@approvals_app.command("list")
def approvals_list(account: str = ACCOUNT_OPTION):
    """List pending drafts."""
    _, store = _setup()
    items = store.list_approvals(account)
    if not items:
        typer.echo("No drafts awaiting approval.")
        return
    for item in items:
        message = store.get_message(item.message_id)
        typer.echo(f"[{item.id}] {message.from_address} - {message.subject} ({item.confidence}%)")
        typer.echo(f"    {item.proposed_reply[:200]}")


def _pipeline_for_review():
    from replygate.pipeline import build_pipeline

    config, store = _setup()
    return build_pipeline(config, store)


@approvals_app.command("approve")
def approvals_approve(
    item_id: int = typer.Argument(..., help="Approval item id."),
    note: Optional[str] = typer.Option(None, "--note", help="Reviewer note."),
    edited: Optional[Path] = typer.Option(None, "--edited", exists=True, dir_okay=False,
                                          help="File with the edited reply text."),
):
    """Approve a draft and send it."""
    from replygate.errors import InvalidTransition

    pipeline = _pipeline_for_review()
    try:
        result = pipeline.approve(item_id, note, edited.read_text() if edited else None)
    except InvalidTransition as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1)
    _print_result(result)


@approvals_app.command("reject")
def approvals_reject(
    item_id: int = typer.Argument(..., help="Approval item id."),
    note: Optional[str] = typer.Option(None, "--note", help="Reviewer note."),
):
    """Reject a draft; the message is escalated."""
    from replygate.errors import InvalidTransition

    pipeline = _pipeline_for_review()
    try:
        result = pipeline.reject(item_id, note)
    except InvalidTransition as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1)
    _print_result(result)


# --- Escalation queue ---

escalations_app = typer.Typer(help="Messages waiting for a human.")
app.add_typer(escalations_app, name="escalations")


@escalations_app.command("list")
def escalations_list(account: str = ACCOUNT_OPTION):
    """List pending escalations, most urgent first."""
    _, store = _setup()
    items = store.list_escalations(account)
    if not items:
        typer.echo("No pending escalations.")
        return
    for item in items:
        message = store.get_message(item.message_id)
        typer.echo(
            f"[{item.id}] {item.priority.value:6s} {message.from_address} - "
            f"{message.subject}: {item.reason}"
        )


@escalations_app.command("resolve")
def escalations_resolve(item_id: int = typer.Argument(..., help="Escalation id.")):
    """Mark an escalation resolved."""
    from replygate.errors import InvalidTransition

    pipeline = _pipeline_for_review()
    try:
        pipeline.resolve_escalation(item_id)
    except InvalidTransition as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1)
    typer.echo(f"Escalation {item_id} resolved.")


# --- Stats ---

@app.command()
def stats(
    days: int = typer.Option(7, "--days", "-d", help="Look-back window in days."),
    account: str = ACCOUNT_OPTION,
):
    """Show message counts and the automation rate."""
    from replygate.database import db_stats
    from replygate.models import MessageStatus
    from replygate.pipeline import processing_stats

    _, store = _setup()
    s = db_stats(store.conn)
    typer.echo(f"Messages:     {s.get('messages', 0)}")
    for status in MessageStatus:
        count = len(store.list_messages(account, status))
        typer.echo(f"  {status.value:18s} {count}")

    pending_approvals = len(store.list_approvals(account))
    pending_escalations = len(store.list_escalations(account))
    typer.echo(f"Pending approvals:   {pending_approvals}")
    typer.echo(f"Pending escalations: {pending_escalations}")

    processing = processing_stats(store, account, days)
    typer.echo(f"Last {days} days: {processing['auto_responses']} automated, "
               f"{processing['manual_responses']} manual, "
               f"{processing['escalations']} escalations, "
               f"automation rate {processing['automation_rate']}%")


if __name__ == "__main__":
    app()
