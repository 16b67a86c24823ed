"""Tests for the worker command line."""

from unittest.mock import AsyncMock, patch

import pytest

from cep_crawler.worker import __main__ as cli

from conftest import FakeProvider, make_settings


def test_command_is_required():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_run_applies_overrides():
    with patch.object(cli, "load_settings", return_value=make_settings()) as load, patch.object(
        cli, "setup_crawler_logger"
    ), patch.object(cli, "run_worker", new=AsyncMock()) as run_worker:
        cli.main(["run", "--providers", "viacep,brasilapi", "--min-interval-ms", "250", "--worker-id", "w1"])

    load.assert_called_once_with(
        environment=None, log_level="INFO", providers="viacep,brasilapi", min_request_interval_ms=250
    )
    run_worker.assert_awaited_once()
    assert run_worker.await_args.kwargs["worker_id"] == "w1"


@pytest.mark.asyncio
async def test_check_providers_reports_each_provider(capsys):
    viacep, brasilapi = FakeProvider("ViaCEP"), FakeProvider("BrasilAPI")
    brasilapi.probe_ok = False

    with patch.object(cli, "create_providers", return_value=[viacep, brasilapi]):
        healthy = await cli.check_providers(make_settings(providers=["viacep", "brasilapi"]))

    assert healthy == ["ViaCEP"]
    assert capsys.readouterr().out.splitlines() == ["ViaCEP: healthy", "BrasilAPI: unhealthy"]
    assert viacep.closed and brasilapi.closed


def test_health_exits_non_zero_without_healthy_provider():
    with patch.object(cli, "load_settings", return_value=make_settings()), patch.object(
        cli, "setup_crawler_logger"
    ), patch.object(cli, "check_providers", new=AsyncMock(return_value=[])):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["health"])

    assert exc_info.value.code == 1
