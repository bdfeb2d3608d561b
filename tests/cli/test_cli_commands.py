import json

from click.testing import CliRunner

from hsclassify.cli.main import cli


def test_check_digit_command():
    result = CliRunner().invoke(cli, ["check-digit", "01012100"])
    assert result.exit_code == 0, result.output
    assert result.output.strip() == "0101.21.00 9"


def test_check_digit_rejects_short_code():
    result = CliRunner().invoke(cli, ["check-digit", "0101"])
    assert result.exit_code != 0
    assert "8-digit" in result.output


def test_kb_audit_reports_mismatch():
    runner = CliRunner()
    result = runner.invoke(cli, ["kb-audit"])
    assert result.exit_code == 0, result.output
    assert "MISMATCH 8517.13.00: declared 4, computed 5" in result.output

    strict = runner.invoke(cli, ["kb-audit", "--strict"])
    assert strict.exit_code == 1


def test_classify_without_questions(direct_service):
    result = CliRunner().invoke(
        cli, ["classify", "Men's cotton t-shirt, 100% cotton, knitted"], obj=direct_service
    )
    assert result.exit_code == 0, result.output
    assert "completed" in result.output
    assert "6109.10.00" in result.output


def test_classify_prompts_for_answers(service):
    result = CliRunner().invoke(
        cli,
        ["classify", "Kitchen utensil, 70% stainless steel blade and 30% plastic handle", "--json"],
        obj=service,
        input="preparing food\n",
    )
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout[result.stdout.index("{"):])
    assert payload["final_code"] == "73239300"


def test_verify_and_legal_record(direct_service):
    classification = direct_service.start_classification("Pure-bred breeding horse")
    runner = CliRunner()

    verified = runner.invoke(cli, ["verify", classification.classification_id], obj=direct_service)
    assert verified.exit_code == 0, verified.output
    assert verified.output.startswith("OK:")

    record = runner.invoke(cli, ["legal-record", classification.classification_id], obj=direct_service)
    assert record.exit_code == 0, record.output
    assert json.loads(record.output)["chain_verified"] is True


def test_bad_context_json(direct_service):
    result = CliRunner().invoke(
        cli, ["classify", "Pure-bred breeding horse", "--context", "{not json"], obj=direct_service
    )
    assert result.exit_code == 2


def test_resume_command(service, direct_service):
    runner = CliRunner()
    pending = service.start_classification("Kitchen utensil, 70% stainless steel blade and 30% plastic handle")

    asked = runner.invoke(cli, ["resume", pending.classification_id], obj=service)
    assert asked.exit_code == 0, asked.output
    assert asked.output.startswith("Pending question (purpose):")

    finished = direct_service.start_classification("Pure-bred breeding horse")
    rejected = runner.invoke(cli, ["resume", finished.classification_id], obj=direct_service)
    assert rejected.exit_code == 1
    assert "already completed" in rejected.output
