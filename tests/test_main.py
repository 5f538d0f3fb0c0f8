"""
Tests for the command line in mmbot/main.py, run against the paper venue.
"""
import json
import re

import pytest

from mmbot.adapters import HttpVenueAdapter, PaperVenueAdapter
from mmbot.main import DryRunAdapter, _amain, _make_venue, build_parser
from mmbot.planner import PlannedOrder


@pytest.fixture
def cli_config(temp_dir):
    path = temp_dir / "config.json"
    path.write_text(json.dumps({
        "bot": {"max_acceptable_loss": 1_000_000, "is_active": True},
        "markets": ["m1", "m2"],
        "log_path": str(temp_dir / "events.jsonl"),
        "activity_log_path": str(temp_dir / "activity.jsonl"),
        "state_path": str(temp_dir / "state.json"),
        "shapes_path": str(temp_dir / "shapes.json"),
    }))
    scores = temp_dir / "scores.json"
    scores.write_text(json.dumps({"m1": 80, "m2": 30}))
    return str(path), str(scores)


class TestCommandLine:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_init_requires_confirmation(self, cli_config, capsys):
        config, scores = cli_config
        assert await _amain([config, "tiers", "init", scores]) == 1
        assert "--yes" in capsys.readouterr().out

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_init_then_preview_and_deploy(self, cli_config, capsys):
        config, scores = cli_config
        assert await _amain([config, "tiers", "init", scores, "--yes"]) == 0
        rows = json.loads(capsys.readouterr().out)
        assert [r["tier"] for r in rows] == ["S", "B"]

        assert await _amain([config, "--paper", "preview", "--json"]) == 0
        out = capsys.readouterr().out
        plan = json.loads(out[out.index("{"):])
        assert plan["status"] == "ok"
        assert plan["total_markets"] == 2

        assert await _amain([config, "--paper", "--paper-balance", "2000000", "deploy"]) == 0
        assert "Deploy refused" not in capsys.readouterr().out

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_deploy_refused_without_tiers(self, cli_config, capsys):
        config, _ = cli_config
        assert await _amain([config, "--paper", "deploy"]) == 1
        assert "no_markets_weighted" in capsys.readouterr().out

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_set_updates_config_file(self, cli_config):
        config, _ = cli_config
        assert await _amain([config, "--paper", "set", "--max-loss", "5000000", "--active", "false"]) == 0
        with open(config) as f:
            saved = json.load(f)
        assert saved["bot"]["max_acceptable_loss"] == 5_000_000
        assert saved["bot"]["is_active"] is False

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_invalid_setting_reports_error(self, cli_config, capsys):
        config, _ = cli_config
        assert await _amain([config, "--paper", "set", "--multiplier", "-1"]) == 2
        assert "Error" in capsys.readouterr().out

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_invalid_config_file_reports_error(self, temp_dir, capsys):
        path = temp_dir / "bad.json"
        path.write_text(json.dumps({"bot": {"max_acceptable_loss": 0}}))

        assert await _amain([str(path), "--paper", "preview"]) == 2
        assert "❌ Error: max_acceptable_loss" in capsys.readouterr().out

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_activity_lists_dated_entries(self, cli_config, capsys):
        config, _ = cli_config
        assert await _amain([config, "--paper", "set", "--multiplier", "0.5"]) == 0
        capsys.readouterr()

        assert await _amain([config, "activity", "--limit", "5"]) == 0
        line = capsys.readouterr().out.strip()
        assert re.match(r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}  config_updated", line)
        assert '"global_multiplier": 0.5' in line

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_thresholds_and_shapes(self, cli_config, capsys):
        config, _ = cli_config
        assert await _amain([config, "thresholds", "add", "50", "75"]) == 0
        assert await _amain([config, "thresholds", "add", "25", "50"]) == 0
        out = capsys.readouterr().out
        assert "more liquidity" in out

        assert await _amain([config, "shapes", "create", "Flat", "flat"]) == 0
        assert await _amain([config, "shapes", "list"]) == 0
        assert "Default Bell" in capsys.readouterr().out

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_worst_case(self, cli_config, capsys):
        config, _ = cli_config
        assert await _amain([config, "--paper", "worst-case"]) == 0
        out = capsys.readouterr().out
        report = json.loads(out[out.index("{"):])
        assert report["worst_case"] == 1_000_000


class TestAdapterSelection:

    @pytest.mark.unit
    def test_paper_flag(self):
        args = build_parser().parse_args(["c.json", "--paper", "preview"])
        assert isinstance(_make_venue(args), PaperVenueAdapter)

    @pytest.mark.unit
    def test_dry_run_flag(self, monkeypatch):
        monkeypatch.setenv("VENUE_API_TOKEN", "t")
        args = build_parser().parse_args(["c.json", "--dry-run", "preview"])
        venue = _make_venue(args)
        assert isinstance(venue, DryRunAdapter)
        assert isinstance(venue, HttpVenueAdapter)

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_dry_run_only_prints(self, monkeypatch, capsys):
        monkeypatch.setenv("VENUE_API_TOKEN", "t")
        venue = DryRunAdapter()
        result = await venue.place_orders("m1", [PlannedOrder("m1", "no", 10, 1000, 900)])

        assert result.total_cost == 900
        assert "[DRY] WOULD PLACE NO 1,000 @ 10%" in capsys.readouterr().out
