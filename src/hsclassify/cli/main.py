"""Command-line interface for hsclassify."""

from __future__ import annotations

import json
import logging
import sys
from typing import Optional

import click

from ..classification.errors import AuditIntegrityViolation, ClassificationError
from ..classification.knowledge_base import (
    compute_check_digit,
    get_default_knowledge_base,
    iter_tariff_items,
)
from ..classification.models import format_code, normalize_code
from ..classification.service import ClassificationService


def _service(ctx: click.Context) -> ClassificationService:
    if ctx.obj is None:
        ctx.obj = ClassificationService.from_env()
    return ctx.obj


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log engine steps to stderr.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """hsclassify command suite."""

    if verbose:
        logging.basicConfig(level=logging.INFO, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")


@cli.command("classify")
@click.argument("description")
@click.option(
    "--context",
    "context_json",
    default=None,
    help="Structured context as a JSON object (materials, purpose, packaging ...).",
)
@click.option("--json", "as_json", is_flag=True, help="Emit the final classification as JSON.")
@click.pass_context
def classify(ctx: click.Context, description: str, context_json: Optional[str], as_json: bool) -> None:
    """Classify DESCRIPTION, prompting for any clarification the engine needs."""

    service = _service(ctx)
    try:
        context = json.loads(context_json) if context_json else None
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--context") from exc

    try:
        classification = service.start_classification(description, context, actor="cli")
        question = service.pending_question(classification.classification_id)
        while question is not None:
            click.echo(question.question, err=as_json)
            for index, option in enumerate(question.options, start=1):
                click.echo(f"  {index}. {option.label}", err=as_json)
            raw = click.prompt("Answer", err=as_json).strip()
            answer = raw
            if raw.isdigit() and 1 <= int(raw) <= len(question.options):
                answer = question.options[int(raw) - 1].value
            progress = service.submit_answer(
                classification.classification_id, question.step.value, answer, actor="cli"
            )
            classification = progress.classification
            question = progress.question
    except ClassificationError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(classification.model_dump(mode="json"), indent=2))
        return

    code = classification.final_code or classification.metadata.get("best_code")
    click.echo(f"Classification: {classification.classification_id}")
    click.echo(f"Status:         {classification.status.value}")
    click.echo(f"Code:           {format_code(code) if code else 'undetermined'}")
    click.echo(f"Confidence:     {(classification.confidence or 0.0):.2f}")
    reason = classification.metadata.get("status_reason")
    if reason:
        click.echo(f"Reason:         {reason}")


@cli.command("check-digit")
@click.argument("code")
def check_digit(code: str) -> None:
    """Print the check digit of an 8-digit tariff CODE."""

    try:
        digit = compute_check_digit(code)
    except ClassificationError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{format_code(code)} {digit}")


@cli.command("verify")
@click.argument("classification_id")
@click.pass_context
def verify(ctx: click.Context, classification_id: str) -> None:
    """Verify the audit hash chain of a stored classification."""

    service = _service(ctx)
    try:
        service.verify_audit_trail(classification_id)
    except AuditIntegrityViolation as exc:
        raise click.ClickException(f"FAILED: {exc}") from exc
    except ClassificationError as exc:
        raise click.ClickException(str(exc)) from exc
    entries = service.get_audit_trail(classification_id)
    click.echo(f"OK: {len(entries)} audit entries verified for {classification_id}")


@cli.command("resume")
@click.argument("classification_id")
@click.pass_context
def resume(ctx: click.Context, classification_id: str) -> None:
    """Continue a classification that stopped before finishing."""

    try:
        progress = _service(ctx).resume_classification(classification_id, actor="cli")
    except ClassificationError as exc:
        raise click.ClickException(str(exc)) from exc
    if progress.question is not None:
        click.echo(f"Pending question ({progress.question.feature}): {progress.question.question}")
        return
    classification = progress.classification
    code = format_code(classification.final_code) if classification.final_code else "-"
    click.echo(f"{classification.status.value} {code}")


@cli.command("legal-record")
@click.argument("classification_id")
@click.pass_context
def legal_record(ctx: click.Context, classification_id: str) -> None:
    """Export the legal record of a classification as JSON."""

    service = _service(ctx)
    try:
        record = service.export_legal_record(classification_id)
    except ClassificationError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(record.model_dump(mode="json"), indent=2))


@cli.command("kb-audit")
@click.option("--path", default=None, help="Knowledge base JSON file (defaults to the bundled sample).")
@click.option("--strict", is_flag=True, help="Exit non-zero when a declared check digit is wrong.")
def kb_audit(path: Optional[str], strict: bool) -> None:
    """Recompute the check digit of every 8-digit tariff item in the knowledge base."""

    knowledge_base = get_default_knowledge_base(path)
    checked = 0
    mismatches = []
    for item in iter_tariff_items(knowledge_base):
        digits = normalize_code(item.code)
        if len(digits) != 8:
            continue
        checked += 1
        computed = compute_check_digit(digits)
        if item.check_digit is not None and item.check_digit != computed:
            mismatches.append((digits, item.check_digit, computed))

    for digits, declared, computed in mismatches:
        click.echo(f"MISMATCH {format_code(digits)}: declared {declared}, computed {computed}")
    click.echo(f"{checked} tariff items checked, {len(mismatches)} mismatch(es)")
    if strict and mismatches:
        sys.exit(1)


if __name__ == "__main__":
    cli()
