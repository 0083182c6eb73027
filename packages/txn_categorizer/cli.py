# ruff: noqa: I001
"""CLI for the ``txn_categorizer`` package.

A Typer console interface over the engine and the rule learning loop.
Environment variables (``OPENAI_API_KEY``, ``DATABASE_URL`` and the
``TXN_CATEGORIZER_*`` engine settings) are loaded from a local ``.env`` using
``python-dotenv`` before any command runs. Business logic lives in
``txn_categorizer.orchestrator``, ``txn_categorizer.decisions`` and
``txn_categorizer.learning``; this module only parses, delegates and prints
JSON.
"""

from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import typer
from dotenv import load_dotenv

from .config import EngineConfig
from .errors import CategorizerError
from .logging_setup import configure_logging


# ---- Small module-level helpers used by CLI commands -------------------------


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict) or hasattr(value, "items"):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return value


def _emit(value: Any) -> None:
    typer.echo(json.dumps(_jsonable(value), ensure_ascii=False))


def _fail(message: str) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code=1)


def _load_transactions(path: Path) -> list[Any]:
    from .models import NormalizedTransaction

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise _fail(f"File not found: {path}") from e
    except json.JSONDecodeError as e:
        raise _fail(f"Invalid JSON in {path}: {e}") from e
    if isinstance(raw, dict):
        raw = raw.get("transactions", [])
    if not isinstance(raw, list):
        raise _fail("expected a JSON array of transactions")
    try:
        return [NormalizedTransaction.from_mapping(item) for item in raw]
    except ValueError as e:
        raise _fail(f"invalid transaction: {e}") from e


def _load_vendor_exemplars(path: Path, taxonomy: Any) -> list[tuple[str, str, str]]:
    """Read ``[{"vendor": ..., "category": <slug>}, ...]`` into index triples."""

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise _fail(f"File not found: {path}") from e
    except json.JSONDecodeError as e:
        raise _fail(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(raw, list):
        raise _fail("expected a JSON array of vendor exemplars")

    triples: list[tuple[str, str, str]] = []
    for item in raw:
        vendor = item.get("vendor") if isinstance(item, dict) else None
        slug = item.get("category") if isinstance(item, dict) else None
        if not isinstance(vendor, str) or not vendor.strip():
            raise _fail(f"vendor exemplar needs a non-empty 'vendor': {item!r}")
        cat = taxonomy.by_slug(slug) if isinstance(slug, str) else None
        if cat is None:
            raise _fail(f"unknown category for vendor exemplar {vendor!r}: {slug!r}")
        triples.append((vendor, cat.id, cat.name))
    return triples


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Hybrid transaction categorization: rule-based Pass-1, LLM Pass-2 fallback, "
        "guardrails and a rule learning loop. Loads .env before running."
    ),
)
rules_app = typer.Typer(no_args_is_help=True, help="Rule version lifecycle.")
oscillations_app = typer.Typer(no_args_is_help=True, help="Category oscillation triage.")
app.add_typer(rules_app, name="rules")
app.add_typer(oscillations_app, name="oscillations")


@app.callback()
def _root() -> None:
    """Load ``.env`` (without overriding the environment) and configure logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


@app.command("categorize")
def categorize_cmd(
    input_path: Path = typer.Argument(..., help="JSON file with an array of transactions."),
    *,
    taxonomy_path: Path | None = typer.Option(
        None, "--taxonomy", help="Taxonomy JSON file (defaults to the shipped taxonomy)."
    ),
    no_llm: bool = typer.Option(False, "--no-llm", help="Disable the Pass-2 LLM fallback."),
    vendor_exemplars: Path | None = typer.Option(
        None,
        "--vendor-exemplars",
        help='JSON array of {"vendor", "category"} used for OpenAI embedding similarity.',
    ),
    embedding_model: str = typer.Option(
        "text-embedding-3-small", help="Embedding model for --vendor-exemplars."
    ),
    concurrency: int | None = typer.Option(None, help="Override batch concurrency (1-32)."),
    apply: bool = typer.Option(
        False, "--apply", help="Persist results and decision audit rows to the database."
    ),
    org_id: str | None = typer.Option(
        None, help="Organization id; loads its active rule versions and is required with --apply."
    ),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Categorize transactions and print one JSON object per transaction."""

    from .models import DecisionSource, Engine
    from .orchestrator import batch_categorize
    from .pass1 import CategorizerContext
    from .rules.tables import RuleTables
    from .taxonomy import Taxonomy

    if apply and not org_id:
        raise _fail("--org-id is required with --apply")

    try:
        cfg = EngineConfig.from_env()
    except CategorizerError as e:
        raise _fail(f"invalid configuration: {e}") from e
    if no_llm:
        cfg = dataclasses.replace(cfg, enable_llm_fallback=False)

    taxonomy = Taxonomy.from_json(taxonomy_path) if taxonomy_path else Taxonomy.default()
    tables = RuleTables.default()
    if org_id and (database_url or apply):
        from db.client import session_scope
        from .learning import load_rule_tables

        with session_scope(database_url=database_url) as session:
            tables = load_rule_tables(session, org_id, taxonomy=taxonomy)

    txs = _load_transactions(input_path)

    embedding_index = None
    if vendor_exemplars is not None:
        from openai import OpenAIError
        from .embeddings import EmbeddingIndex, OpenAIEmbedder

        triples = _load_vendor_exemplars(vendor_exemplars, taxonomy)
        try:
            embedding_index = EmbeddingIndex.build(
                triples, OpenAIEmbedder(model=embedding_model)
            )
        except OpenAIError as e:
            raise _fail(f"could not embed vendor exemplars: {e}") from e

    ctx = CategorizerContext(
        config=cfg, tables=tables, taxonomy=taxonomy, embedding_index=embedding_index
    )
    batch = batch_categorize(txs, ctx, concurrency=concurrency)

    for item in batch.items:
        res = item.result
        if res is None:
            _emit({"id": item.tx_id, "error": item.error})
            continue
        cat = taxonomy.get(res.category_id)
        _emit(
            {
                "id": item.tx_id,
                "category_id": res.category_id,
                "category_slug": cat.slug if cat else None,
                "confidence": round(res.confidence, 4),
                "engine": res.engine,
                "llm_attempted": res.llm_attempted,
                "rationale": list(res.rationale),
            }
        )
    typer.echo(json.dumps({"summary": _jsonable(batch.summary)}), err=True)

    if apply:
        from .decisions import DecisionRequest, batch_decide_and_apply

        requests = [
            DecisionRequest(
                tx_id=item.tx_id,
                result=item.result.as_categorization(),
                source=(
                    DecisionSource.LLM if item.result.engine is Engine.LLM else DecisionSource.PASS1
                ),
            )
            for item in batch.items
            if item.result is not None
        ]
        applied = batch_decide_and_apply(
            requests, org_id=org_id or "", database_url=database_url, config=cfg
        )
        typer.echo(json.dumps({"applied": _jsonable(applied)}), err=True)
        if applied.failed:
            raise typer.Exit(code=1)


@app.command("reconcile")
def reconcile_cmd(
    payout_cents: str = typer.Argument(..., help="Payout amount in integer cents."),
    constituents: list[str] = typer.Argument(..., help="Constituent amounts in integer cents."),
    *,
    tolerance_cents: int = typer.Option(1, help="Allowed absolute difference in cents."),
) -> None:
    """Check a payout against the sum of its constituent transactions."""

    from .money import reconcile_payout

    result = reconcile_payout(payout_cents, constituents, tolerance_cents=tolerance_cents)
    _emit(result)
    if not result.reconciled:
        raise typer.Exit(code=1)


# ---- rules -------------------------------------------------------------------


@rules_app.command("create")
def rules_create_cmd(
    org_id: str = typer.Option(..., help="Organization id."),
    rule_type: str = typer.Option(..., help="mcc | vendor | keyword | embedding"),
    identifier: str = typer.Option(..., help="MCC code, vendor text or keyword."),
    category_id: str = typer.Option(..., help="Target category id."),
    confidence: float = typer.Option(..., help="Rule confidence in [0, 1]."),
    source: str = typer.Option("learned", help="system | learned | manual"),
    pattern: str | None = typer.Option(None, help="Optional vendor regex stored in metadata."),
    created_by: str | None = typer.Option(None, help="Actor recorded on the version."),
    database_url: str | None = typer.Option(None, help="Override DATABASE_URL."),
) -> None:
    """Create the next version of a rule."""

    from .learning import create_rule_version

    try:
        info = create_rule_version(
            org_id=org_id,
            rule_type=rule_type,
            rule_identifier=identifier,
            category_id=category_id,
            confidence=confidence,
            source=source,
            metadata={"pattern": pattern} if pattern else None,
            created_by=created_by,
            database_url=database_url,
        )
    except ValueError as e:
        raise _fail(str(e)) from e
    _emit(info)


@rules_app.command("canary")
def rules_canary_cmd(
    rule_version_id: str = typer.Argument(...),
    org_id: str = typer.Option(..., help="Organization id."),
    database_url: str | None = typer.Option(None, help="Override DATABASE_URL."),
) -> None:
    """Run a canary test for a rule version."""

    from db.client import session_scope
    from .learning import run_canary_test

    cfg = EngineConfig.from_env()
    try:
        with session_scope(database_url=database_url) as session:
            outcome = run_canary_test(
                session, org_id=org_id, rule_version_id=rule_version_id, config=cfg.canary
            )
    except CategorizerError as e:
        raise _fail(str(e)) from e
    _emit(outcome)
    if not outcome.passed_threshold:
        raise typer.Exit(code=2)


@rules_app.command("promote")
def rules_promote_cmd(
    rule_version_id: str = typer.Argument(...),
    by: str = typer.Option(..., "--by", help="Actor performing the promotion."),
    database_url: str | None = typer.Option(None, help="Override DATABASE_URL."),
) -> None:
    """Promote a rule version that passed its canary test."""

    from .learning import promote_rule_version

    try:
        info = promote_rule_version(rule_version_id, promoted_by=by, database_url=database_url)
    except CategorizerError as e:
        raise _fail(str(e)) from e
    _emit(info)


@rules_app.command("rollback")
def rules_rollback_cmd(
    rule_version_id: str = typer.Argument(...),
    by: str = typer.Option(..., "--by", help="Actor performing the rollback."),
    reason: str = typer.Option(..., help="Audit reason."),
    database_url: str | None = typer.Option(None, help="Override DATABASE_URL."),
) -> None:
    """Deactivate a rule version and reactivate its parent."""

    from .learning import rollback_rule_version

    try:
        ok = rollback_rule_version(
            rule_version_id, rolled_back_by=by, reason=reason, database_url=database_url
        )
    except (CategorizerError, ValueError) as e:
        raise _fail(str(e)) from e
    _emit({"rule_version_id": rule_version_id, "rolled_back": ok})
    if not ok:
        raise typer.Exit(code=2)


@rules_app.command("list")
def rules_list_cmd(
    org_id: str = typer.Option(..., help="Organization id."),
    rule_type: str | None = typer.Option(None, help="Filter by rule type."),
    database_url: str | None = typer.Option(None, help="Override DATABASE_URL."),
) -> None:
    """List active rule versions."""

    from db.client import session_scope
    from .learning import get_active_rule_versions

    with session_scope(database_url=database_url) as session:
        rows = get_active_rule_versions(session, org_id, rule_type)
    for r in rows:
        _emit(r)


# ---- oscillations ------------------------------------------------------------


@oscillations_app.command("detect")
def oscillations_detect_cmd(
    org_id: str = typer.Option(..., help="Organization id."),
    threshold: int | None = typer.Option(None, help="Minimum category changes."),
    lookback_days: int | None = typer.Option(None, help="Window in days."),
    database_url: str | None = typer.Option(None, help="Override DATABASE_URL."),
) -> None:
    """Report transactions whose category keeps changing."""

    from db.client import session_scope
    from .learning import detect_rule_oscillations

    cfg = EngineConfig.from_env()
    with session_scope(database_url=database_url) as session:
        report = detect_rule_oscillations(
            session,
            org_id,
            threshold=threshold or cfg.oscillation_threshold,
            lookback_days=lookback_days or cfg.oscillation_lookback_days,
        )
    _emit(report)


@oscillations_app.command("list")
def oscillations_list_cmd(
    org_id: str = typer.Option(..., help="Organization id."),
    limit: int = typer.Option(50, help="Maximum rows."),
    database_url: str | None = typer.Option(None, help="Override DATABASE_URL."),
) -> None:
    """List unresolved oscillations, most recent first."""

    from db.client import session_scope
    from .learning import get_unresolved_oscillations

    with session_scope(database_url=database_url) as session:
        rows = get_unresolved_oscillations(session, org_id, limit=limit)
    for r in rows:
        _emit(r)


@oscillations_app.command("resolve")
def oscillations_resolve_cmd(
    oscillation_id: str = typer.Argument(...),
    category_id: str = typer.Option(..., help="Final category id."),
    by: str = typer.Option(..., "--by", help="Actor resolving the oscillation."),
    database_url: str | None = typer.Option(None, help="Override DATABASE_URL."),
) -> None:
    """Resolve an oscillation with a final category."""

    from db.client import session_scope
    from .learning import resolve_oscillation

    with session_scope(database_url=database_url) as session:
        won = resolve_oscillation(
            session, oscillation_id, resolution_category_id=category_id, resolved_by=by
        )
    _emit({"oscillation_id": oscillation_id, "resolved": won})
    if not won:
        raise typer.Exit(code=2)


# ---- effectiveness -----------------------------------------------------------


@app.command("effectiveness")
def effectiveness_cmd(
    org_id: str = typer.Option(..., help="Organization id."),
    rule_version_id: str | None = typer.Option(None, help="Show metrics for one version."),
    track: bool = typer.Option(False, "--track", help="Recompute this week's metrics first."),
    days: int = typer.Option(30, help="Lookback in days."),
    database_url: str | None = typer.Option(None, help="Override DATABASE_URL."),
) -> None:
    """Track and/or show rule effectiveness, with precision drift."""

    from db.client import session_scope
    from .learning import detect_precision_drift, get_rule_effectiveness, track_rule_effectiveness

    if not track and not rule_version_id:
        raise _fail("pass --track and/or --rule-version-id")

    with session_scope(database_url=database_url) as session:
        if track:
            written = track_rule_effectiveness(session, org_id)
            _emit({"tracked": written})
        if rule_version_id:
            points = get_rule_effectiveness(session, org_id, rule_version_id, days_since=days)
            drift = detect_precision_drift(session, org_id, rule_version_id, days_since=days)
            _emit({"points": points, "drift": drift})


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    # Running as a module: `python -m txn_categorizer.cli`
    app()
