"""
Tests for the pfo command line interface.
"""

import asyncio
import importlib
import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

cli_main = importlib.import_module("production_flow_orchestrator.cli.main")
from production_flow_orchestrator.core.config import parse_step_catalog
from production_flow_orchestrator.utils.signing import signature_header

from .conftest import CATALOG

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def catalog_file(tmp_path):
    path = tmp_path / "steps.yaml"
    path.write_text(yaml.safe_dump(CATALOG))
    return str(path)


def test_steps_validate(runner, catalog_file):
    result = runner.invoke(cli_main.cli, ["steps", "validate", catalog_file])

    assert result.exit_code == 0, result.output
    assert f"Step catalogue {catalog_file} is valid" in result.output
    assert "SENSOR: 6 steps (2 conditional, 1 blocking)" in result.output
    assert "MLA: 4 steps (0 conditional, 1 blocking)" in result.output


def test_steps_validate_rejects_broken_catalog(runner, tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(yaml.safe_dump({"product_types": {"X": [
        {"step_number": 1, "conditional_on_step": 2, "conditional_value": "A"},
        {"step_number": 2},
    ]}}))

    result = runner.invoke(cli_main.cli, ["steps", "validate", str(path)])

    assert result.exit_code == 1
    assert "Error validating step catalogue" in result.output


def test_steps_show(runner, catalog_file):
    result = runner.invoke(cli_main.cli, ["steps", "show", catalog_file, "MLA"])

    assert result.exit_code == 0, result.output
    assert "Product type: MLA" in result.output
    assert "Leak test" in result.output

    as_json = runner.invoke(cli_main.cli, ["steps", "show", catalog_file, "MLA", "--json"])
    assert as_json.exit_code == 0, as_json.output
    assert "restart_from_step" in as_json.output

    missing = runner.invoke(cli_main.cli, ["steps", "show", catalog_file, "PUMP"])
    assert missing.exit_code == 1


def test_webhook_sign(runner, tmp_path):
    body = '{"event":"step_completed","data":{}}'
    result = runner.invoke(cli_main.cli, ["webhook", "sign", "--secret", "s3cret", "--body", body])

    assert result.exit_code == 0, result.output
    assert result.output.strip() == signature_header("s3cret", body)

    body_file = tmp_path / "body.json"
    body_file.write_bytes(body.encode("utf-8"))
    from_file = runner.invoke(cli_main.cli, ["webhook", "sign", "--secret", "s3cret", "--body-file", str(body_file)])
    assert from_file.output.strip() == signature_header("s3cret", body)

    from_stdin = runner.invoke(cli_main.cli, ["webhook", "sign", "--secret", "s3cret"], input=body)
    assert from_stdin.output.strip() == signature_header("s3cret", body)


def test_rules_simulate(runner, tmp_path):
    rules_file = tmp_path / "rules.yaml"
    rules_file.write_text(yaml.safe_dump({"rules": [
        {
            "name": "big orders",
            "action_type": "create_work_order",
            "conditions": {"field": "order.qty", "operator": "gte", "value": 10},
            "field_mappings": {"wo_number": "{{order.number}}", "batch_size": "$.order.qty"},
        },
        {"name": "audit", "action_type": "log_activity", "sort_order": 5},
    ]}))
    payload = json.dumps({"order": {"number": "SO-9", "qty": 4}})

    result = runner.invoke(cli_main.cli, ["rules", "simulate", str(rules_file), "--payload", payload, "--source-id", "erp"])

    assert result.exit_code == 0, result.output
    simulations = json.loads(result.output)
    assert [s["rule_name"] for s in simulations] == ["big orders", "audit"]
    assert simulations[0]["would_execute"] is False
    assert simulations[0]["extracted_values"] == {"wo_number": "SO-9", "batch_size": 4}
    assert simulations[1]["would_execute"] is True


def test_rules_simulate_rejects_bad_payload(runner, tmp_path):
    rules_file = tmp_path / "rules.yaml"
    rules_file.write_text(yaml.safe_dump([{"name": "audit", "action_type": "log_activity"}]))

    result = runner.invoke(cli_main.cli, ["rules", "simulate", str(rules_file), "--payload", "{not json"])

    assert result.exit_code == 1
    assert "Error simulating rules" in result.output


def test_commands_needing_a_database_require_url(runner, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PFO_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("PFO_CONFIG", raising=False)

    result = runner.invoke(cli_main.cli, ["--log-level", "ERROR", "health"])

    assert result.exit_code == 1
    assert "database_url" in result.output


class TestUnitCommands:
    @pytest.fixture
    def seeded(self, runner, tmp_path, monkeypatch):
        """Point the CLI at an in-memory store holding one started SENSOR unit."""
        from production_flow_orchestrator.core.orchestrator import ProductionOrchestrator
        from production_flow_orchestrator.utils.memory_store import InMemoryDatabase

        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("PFO_CONFIG", raising=False)
        graphs = parse_step_catalog(CATALOG)

        async def _seed():
            store = InMemoryDatabase()
            for product_type, graph in graphs.items():
                await store.upsert_step_definitions(product_type, list(graph.definitions))
            orchestrator = ProductionOrchestrator(store, graphs=graphs)
            _, units = await orchestrator.create_work_order("WO-CLI", "SENSOR")
            return store, units[0]

        store, unit = asyncio.run(_seed())
        monkeypatch.setattr(cli_main, "_create_store", lambda config: store)
        return unit

    def test_unit_advance_and_status(self, runner, seeded):
        advanced = runner.invoke(cli_main.cli, ["--log-level", "ERROR", "unit", "advance", seeded.serial_number])

        assert advanced.exit_code == 0, advanced.output
        assert f"Unit {seeded.serial_number}: began" in advanced.output
        assert "Current step: 1" in advanced.output

        status = runner.invoke(cli_main.cli, ["--log-level", "ERROR", "unit", "status", seeded.serial_number])

        assert status.exit_code == 0, status.output
        assert f"Serial: {seeded.serial_number}" in status.output
        assert "in_progress" in status.output

    def test_unknown_unit(self, runner, seeded):
        result = runner.invoke(cli_main.cli, ["--log-level", "ERROR", "unit", "status", "Q-missing"])

        assert result.exit_code == 1
        assert "Error getting unit status" in result.output


def test_example_catalog_is_valid(runner):
    result = runner.invoke(cli_main.cli, ["steps", "validate", str(EXAMPLES / "steps.yaml")])

    assert result.exit_code == 0, result.output
    assert "SENSOR: 6 steps (2 conditional, 1 blocking)" in result.output
    assert "MLA: 4 steps (0 conditional, 1 blocking)" in result.output


def test_example_rules_simulate(runner):
    payload = {"order": {"number": "SO-1042", "status": "approved", "product": "SENSOR", "qty": 12}}

    result = runner.invoke(cli_main.cli, [
        "rules", "simulate", str(EXAMPLES / "rules.yaml"),
        "--source-id", "erp", "--payload", json.dumps(payload)
    ])

    assert result.exit_code == 0, result.output
    simulations = json.loads(result.output)
    assert [s["would_execute"] for s in simulations] == [True, True, False]
    assert simulations[0]["extracted_values"] == {
        "wo_number": "WO-SO-1042",
        "product_type": "SENSOR",
        "batch_size": 12,
        "notes": "Created from ERP",
    }
