"""
CLI tests using Click's CliRunner. Services and workers are mocked; only
argument handling, output and exit codes are under test.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from aggregator import __version__
from aggregator.main import EXIT_TARGET_NOT_MET, cli, parse_stages
from aggregator.models.schemas import (
    AggregateMeta,
    AggregateResult,
    BackfillReport,
    CoverageReport,
    Platform,
    Quality,
    StageReport,
)
from aggregator.utils.retry import AllProvidersFailedError, PersistenceUnavailableError

# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def cli_environment(settings):
    """Real settings, no logging setup, no database."""
    with patch("aggregator.main.get_settings", return_value=settings), \
         patch("aggregator.main.setup_logger"), \
         patch("aggregator.main.install_shutdown_handlers"), \
         patch("aggregator.main.open_store", new_callable=AsyncMock, return_value=None) as mock_open_store:
        yield mock_open_store


@pytest.fixture
def mock_service(listing_factory):
    service = AsyncMock()
    service.__aenter__.return_value = service
    service.__aexit__.return_value = None
    service.search.return_value = AggregateResult(
        items=[listing_factory(n=1, title="Brass desk lamp")],
        total=1,
        limit=50,
        meta=AggregateMeta(platform_counts={"ALIBABA": 1}),
    )
    with patch("aggregator.main.AggregationService", return_value=service) as mock_cls:
        mock_cls.instance = service
        yield mock_cls


@pytest.fixture
def mock_coverage():
    orchestrator = MagicMock()
    orchestrator.ensure_coverage = AsyncMock()
    with patch("aggregator.main.CoverageOrchestrator", return_value=orchestrator) as mock_cls, \
         patch("aggregator.main.StaticFetcher") as static_cls, \
         patch("aggregator.main.RenderedFetcher") as rendered_cls, \
         patch("aggregator.main.create_adapters", return_value={}):
        static_cls.return_value.close = AsyncMock()
        rendered_cls.return_value.close = AsyncMock()
        mock_cls.instance = orchestrator
        yield mock_cls


# =============================================================================
# search
# =============================================================================

def test_search_prints_table(runner, mock_service):
    result = runner.invoke(cli, ["search", "desk lamp", "--platform", "alibaba", "--max-price", "5"])

    assert result.exit_code == 0
    assert "Brass desk lamp" in result.output
    query = mock_service.instance.search.await_args.args[0]
    assert query.platform == Platform.ALIBABA
    assert query.filters.max_price == 5
    assert query.limit == 50


def test_search_json_output(runner, mock_service):
    result = runner.invoke(cli, ["search", "desk lamp", "--json", "--limit", "500"])

    assert result.exit_code == 0
    assert '"title": "Brass desk lamp"' in result.output
    assert mock_service.instance.search.await_args.args[0].limit == 200


def test_search_all_providers_failed(runner, mock_service):
    mock_service.instance.search.side_effect = AllProvidersFailedError(
        "All requested platforms failed",
        failures={"ALIBABA": "blocked (http_429)"},
    )

    result = runner.invoke(cli, ["search", "desk lamp"])

    assert result.exit_code == 1
    assert '"error_type": "all_providers_failed"' in result.output
    assert "blocked (http_429)" in result.output


def test_search_invalid_platform(runner, mock_service):
    result = runner.invoke(cli, ["search", "desk lamp", "--platform", "ebay"])

    assert result.exit_code == 2
    mock_service.instance.search.assert_not_awaited()


def test_search_missing_query(runner):
    result = runner.invoke(cli, ["search"])
    assert result.exit_code != 0
    assert "Missing argument 'QUERY'" in result.output


# =============================================================================
# cover
# =============================================================================

def test_cover_exits_when_target_not_met(runner, mock_coverage):
    mock_coverage.instance.ensure_coverage.return_value = CoverageReport(
        final_target=4,
        met=False,
        stages=[StageReport(target=1, cycles=1, met=True), StageReport(target=4, cycles=3)],
    )

    result = runner.invoke(cli, ["cover", "--stages", "4,1", "--max-cycles", "4", "--platform", "1688"])

    assert result.exit_code == EXIT_TARGET_NOT_MET
    assert "NOT met" in result.output
    mock_coverage.instance.ensure_coverage.assert_awaited_once_with([1, 4], 4)
    assert mock_coverage.call_args.kwargs["platform"] == Platform.C1688


def test_cover_success_json(runner, mock_coverage):
    mock_coverage.instance.ensure_coverage.return_value = CoverageReport(final_target=1, met=True)

    result = runner.invoke(cli, ["cover", "--json", "--dry-run"])

    assert result.exit_code == 0
    assert '"met": true' in result.output
    assert mock_coverage.call_args.kwargs["dry_run"] is True


def test_cover_bad_taxonomy(runner, mock_coverage, tmp_path):
    path = tmp_path / "taxonomy.json"
    path.write_text("{oops", encoding="utf-8")

    result = runner.invoke(cli, ["cover", "--taxonomy", str(path)])

    assert result.exit_code == 1
    mock_coverage.assert_not_called()


@pytest.mark.parametrize("value", ["0,4", "a,b"])
def test_cover_rejects_bad_stages(runner, mock_coverage, value):
    result = runner.invoke(cli, ["cover", "--stages", value])
    assert result.exit_code == 2


def test_parse_stages():
    assert parse_stages(None, None, "8, 1,4,4") == [1, 4, 8]
    assert parse_stages(None, None, "") is None


# =============================================================================
# backfill
# =============================================================================

def test_backfill_runs_worker(runner, cli_environment):
    store = AsyncMock()
    cli_environment.return_value = store
    adapter = AsyncMock()
    worker = MagicMock()
    worker.run = AsyncMock(return_value=BackfillReport(platform=Platform.ALIBABA, processed=3, good=3, completed=True))

    with patch("aggregator.main.get_adapter", return_value=adapter), \
         patch("aggregator.main.BackfillWorker", return_value=worker) as worker_cls:
        result = runner.invoke(cli, ["backfill", "alibaba", "--quality", "bad,missing", "--batch-size", "5"])

    assert result.exit_code == 0
    assert "complete" in result.output
    worker.run.assert_awaited_once_with([Quality.BAD, Quality.MISSING])
    assert worker_cls.call_args.kwargs["batch_size"] == 5
    adapter.close.assert_awaited_once()
    store.close.assert_awaited_once()


def test_backfill_requires_store(runner, cli_environment):
    cli_environment.side_effect = PersistenceUnavailableError("connection refused")

    with patch("aggregator.main.BackfillWorker") as worker_cls:
        result = runner.invoke(cli, ["backfill", "ALIBABA"])

    assert result.exit_code == 1
    worker_cls.assert_not_called()


@pytest.mark.parametrize("args", [["backfill", "ebay"], ["backfill", "ALIBABA", "--quality", "great"]])
def test_backfill_rejects_bad_arguments(runner, args):
    result = runner.invoke(cli, args)
    assert result.exit_code == 2


# =============================================================================
# validate-setup
# =============================================================================

def test_validate_setup(runner, cli_environment):
    store = AsyncMock()
    store.count_listings.return_value = 12
    cli_environment.return_value = store

    with patch("aggregator.main._check_browser", new_callable=AsyncMock, return_value=(True, "/opt/chromium")):
        result = runner.invoke(cli, ["validate-setup"])

    assert result.exit_code == 0
    assert "Pass" in result.output
    store.count_listings.assert_awaited_once()


def test_validate_setup_database_down(runner, cli_environment):
    cli_environment.side_effect = PersistenceUnavailableError("connection refused")

    with patch("aggregator.main._check_browser", new_callable=AsyncMock, return_value=(False, "chromium not installed")):
        result = runner.invoke(cli, ["validate-setup"])

    assert result.exit_code == 1
    assert "Fail" in result.output
    assert "Warning: headless escalation disabled" in result.output


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
