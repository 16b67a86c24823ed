"""
ViaCEP lookup provider (https://viacep.com.br).
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from aiohttp import ClientError

from ..core.types import ProviderResult
from .base import JsonHTTPClient, failure_for_status

logger = logging.getLogger(__name__)

VIACEP_FIELDS = ("cep", "logradouro", "complemento", "bairro", "localidade", "uf", "ibge", "gia", "ddd", "siafi")


class ViaCepProvider:
    """Looks up CEPs at `{base_url}/{cep}/json/`. An `{"erro": true}` body means not found."""

    def __init__(
        self,
        base_url: str = "https://viacep.com.br/ws",
        test_cep: str = "01001000",
        timeout_seconds: float = 5.0,
        user_agent: str = "CEP-Crawler/1.0",
        http_client: Optional[JsonHTTPClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.test_cep = test_cep
        self.http = http_client or JsonHTTPClient(timeout_seconds=timeout_seconds, user_agent=user_agent)

    @property
    def name(self) -> str:
        return "ViaCEP"

    async def fetch(self, key: str) -> ProviderResult:
        url = f"{self.base_url}/{key}/json/"
        logger.debug(f"Fetching CEP {key} from ViaCEP")

        try:
            status_code, data = await self.http.get_json(url)
        except asyncio.TimeoutError:
            logger.error(f"Timeout fetching CEP {key} from ViaCEP")
            return ProviderResult(success=False, error=f"Timeout after {self.http.timeout_seconds}s")
        except ClientError as e:
            logger.error(f"Error fetching CEP {key}: {e}")
            return ProviderResult(success=False, error=f"Network error: {e}")

        if status_code != 200:
            return failure_for_status(status_code)

        if not isinstance(data, dict):
            return ProviderResult(success=False, error="Malformed response body", status_code=status_code)

        if data.get("erro"):
            return ProviderResult(success=False, not_found=True, error="CEP not found", status_code=status_code)

        payload: Dict[str, Any] = {field: data.get(field) for field in VIACEP_FIELDS}
        return ProviderResult(success=True, payload=payload, status_code=status_code)

    async def probe(self) -> bool:
        result = await self.fetch(self.test_cep)
        return result.success

    async def close(self) -> None:
        await self.http.close()
