"""Tests for the ViaCEP and BrasilAPI providers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from cep_crawler.core.exceptions import ItemNotFound, ItemTransientFailure
from cep_crawler.core.types import ItemErrorType, ProviderResult
from cep_crawler.provider import BrasilApiProvider, ViaCepProvider, create_providers
from cep_crawler.worker import ItemErrorHandler
from cep_crawler.worker.error_handler import failure_from_result

from conftest import make_settings

VIACEP_BODY = {
    "cep": "01001-000",
    "logradouro": "Praça da Sé",
    "complemento": "lado ímpar",
    "bairro": "Sé",
    "localidade": "São Paulo",
    "uf": "SP",
    "ibge": "3550308",
    "gia": "1004",
    "ddd": "11",
    "siafi": "7107",
}


def _http(status=200, body=None, error=None):
    http = MagicMock()
    http.timeout_seconds = 5.0
    http.close = AsyncMock()
    if error is not None:
        http.get_json = AsyncMock(side_effect=error)
    else:
        http.get_json = AsyncMock(return_value=(status, body))
    return http


class TestViaCep:
    @pytest.mark.asyncio
    async def test_success(self):
        http = _http(body=VIACEP_BODY)
        provider = ViaCepProvider(base_url="https://viacep.com.br/ws/", http_client=http)

        result = await provider.fetch("01001000")

        http.get_json.assert_awaited_once_with("https://viacep.com.br/ws/01001000/json/")
        assert result.success is True
        assert result.payload["localidade"] == "São Paulo"
        assert result.payload["uf"] == "SP"

    @pytest.mark.asyncio
    async def test_erro_body_is_not_found(self):
        provider = ViaCepProvider(http_client=_http(body={"erro": True}))

        result = await provider.fetch("99999999")

        assert result.success is False
        assert result.not_found is True
        assert result.rate_limited is False

    @pytest.mark.asyncio
    async def test_throttled(self):
        result = await ViaCepProvider(http_client=_http(status=429)).fetch("01001000")

        assert result.rate_limited is True
        assert result.not_found is False
        assert result.status_code == 429

    @pytest.mark.asyncio
    async def test_server_error(self):
        result = await ViaCepProvider(http_client=_http(status=500)).fetch("01001000")

        assert result.success is False
        assert result.error == "HTTP 500"
        assert result.rate_limited is False

    @pytest.mark.asyncio
    async def test_timeout(self):
        result = await ViaCepProvider(http_client=_http(error=asyncio.TimeoutError())).fetch("01001000")

        assert result.success is False
        assert result.error == "Timeout after 5.0s"

    @pytest.mark.asyncio
    async def test_network_error(self):
        provider = ViaCepProvider(http_client=_http(error=aiohttp.ClientConnectionError("reset")))

        result = await provider.fetch("01001000")

        assert result.success is False
        assert result.error.startswith("Network error")

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        result = await ViaCepProvider(http_client=_http(body="<html>")).fetch("01001000")

        assert result.success is False
        assert result.error == "Malformed response body"

    @pytest.mark.asyncio
    async def test_probe_and_close(self):
        http = _http(body=VIACEP_BODY)
        provider = ViaCepProvider(test_cep="01001000", http_client=http)

        assert await provider.probe() is True
        await provider.close()
        http.close.assert_awaited_once()


class TestBrasilApi:
    @pytest.mark.asyncio
    async def test_payload_uses_viacep_field_names(self):
        body = {"cep": "01001000", "state": "SP", "city": "São Paulo", "neighborhood": "Sé", "street": "Praça da Sé"}
        http = _http(body=body)

        result = await BrasilApiProvider(http_client=http).fetch("01001000")

        http.get_json.assert_awaited_once_with("https://brasilapi.com.br/api/cep/v1/01001000")
        assert result.payload == {
            "cep": "01001000",
            "logradouro": "Praça da Sé",
            "bairro": "Sé",
            "localidade": "São Paulo",
            "uf": "SP",
        }

    @pytest.mark.asyncio
    async def test_404_is_not_found(self):
        result = await BrasilApiProvider(http_client=_http(status=404, body={"name": "CepPromiseError"})).fetch(
            "99999999"
        )

        assert result.not_found is True

    @pytest.mark.asyncio
    async def test_throttled(self):
        result = await BrasilApiProvider(http_client=_http(status=429)).fetch("01001000")

        assert result.rate_limited is True


def test_create_providers_in_configured_order():
    providers = create_providers(make_settings(providers="brasilapi,viacep"))

    assert [p.name for p in providers] == ["BrasilAPI", "ViaCEP"]


def test_create_providers_unknown_name():
    with pytest.raises(ValueError, match="Unknown provider"):
        create_providers(make_settings(providers="correios"))


class TestItemErrorHandler:
    def test_not_found_beats_rate_limited(self):
        outcome = ItemErrorHandler().classify_result(
            "01001000", ProviderResult(success=False, not_found=True, rate_limited=True)
        )

        assert outcome.error_type == ItemErrorType.NOT_FOUND
        assert outcome.terminal is True
        assert outcome.error_message == "CEP not found"

    def test_rate_limited_is_retryable(self):
        outcome = ItemErrorHandler().classify_result("01001000", ProviderResult(success=False, rate_limited=True))

        assert outcome.error_type == ItemErrorType.RATE_LIMITED
        assert outcome.retryable is True

    def test_other_failure_is_retryable(self):
        outcome = ItemErrorHandler().classify_result("01001000", ProviderResult(success=False, status_code=502))

        assert outcome.error_type == ItemErrorType.TRANSIENT
        assert outcome.retryable is True
        assert outcome.error_message == "Lookup failed with status 502"

    def test_success_without_payload(self):
        outcome = ItemErrorHandler().classify_result("01001000", ProviderResult(success=True))

        assert outcome.success is True
        assert outcome.payload == {}

    @pytest.mark.parametrize(
        "error,error_type,retryable",
        [
            (ItemNotFound("01001000", "gone"), ItemErrorType.NOT_FOUND, False),
            (ItemTransientFailure("01001000", "slow down", rate_limited=True), ItemErrorType.RATE_LIMITED, True),
            (asyncio.TimeoutError(), ItemErrorType.TRANSIENT, True),
            (KeyError("cep"), ItemErrorType.TRANSIENT, True),
        ],
    )
    def test_classify_exception(self, error, error_type, retryable):
        handler = ItemErrorHandler()

        outcome = handler.classify_exception("01001000", error)

        assert outcome.error_type == error_type
        assert outcome.retryable is retryable
        assert handler.get_stats()["outcomes_classified"] == 1

    @pytest.mark.parametrize(
        "result,failure_type,rate_limited",
        [
            (ProviderResult(success=False, not_found=True, rate_limited=True), ItemNotFound, None),
            (ProviderResult(success=False, rate_limited=True, status_code=429), ItemTransientFailure, True),
            (ProviderResult(success=False, error="Timeout after 5.0s"), ItemTransientFailure, False),
        ],
    )
    def test_failed_results_map_onto_item_failures(self, result, failure_type, rate_limited):
        failure = failure_from_result("01001000", result)

        assert type(failure) is failure_type
        assert failure.item_key == "01001000"
        if rate_limited is not None:
            assert failure.rate_limited is rate_limited
