"""
MOMENTUM SCOUT v0.2
===================
Cliente de la API de GitHub para el pipeline de remediación.

Implementa:
- Metadatos del repositorio (último push)
- Lectura de README y archivos (contenido base64)
- Listado de directorios
- Creación de issues (acción terminal del ciclo)
- Rate limiting y manejo de cuotas de GitHub API
"""

import asyncio
import base64
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import httpx
from dotenv import load_dotenv

# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURACIÓN
# ═══════════════════════════════════════════════════════════════════════════════

PROJECT_ROOT = Path.cwd()
load_dotenv(PROJECT_ROOT / ".env")

GITHUB_API_BASE = "https://api.github.com"
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")

REQUEST_TIMEOUT_SECONDS = 30.0
REQUEST_DELAY_SECONDS = 0.5

logger = logging.getLogger("momentum.scout")


# ═══════════════════════════════════════════════════════════════════════════════
# ESTRUCTURAS DE DATOS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ScoutResult:
    """Resultado de una llamada a la API de GitHub."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: int = 0
    rate_limit_remaining: int = -1


@dataclass
class ContentEntry:
    """Entrada de un listado de directorio."""

    type: str  # file | dir
    path: str


class GitHubAPIError(Exception):
    """Error de la API de GitHub."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class RateLimitExceededError(GitHubAPIError):
    """Rate limit excedido."""
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# SCOUT
# ═══════════════════════════════════════════════════════════════════════════════

class ScoutAgent:
    """
    Acceso de solo lectura (y creación de issues) a repositorios GitHub.

    Los métodos de lectura devuelven `ScoutResult` para que el llamador
    decida si un fallo es fatal; `get_pushed_at` y `create_issue` lanzan
    `GitHubAPIError` porque sus llamadores necesitan un fallo explícito.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = GITHUB_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        request_delay: float = REQUEST_DELAY_SECONDS,
    ):
        self._token = GITHUB_TOKEN if token is None else token
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._request_delay = request_delay
        self._last_request_time: Optional[datetime] = None
        self._rate_limit_remaining = 5000 if self._token else 60
        self._rate_limit_reset: Optional[datetime] = None

        self._stats = {
            "api_calls": 0,
            "issues_created": 0,
            "errors": 0,
        }

        logger.info(
            f"ScoutAgent inicializado "
            f"(token={'✓' if self._token else '✗'})"
        )

    def _get_headers(self) -> dict:
        """Genera headers para la API de GitHub."""
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "MomentumScout/0.2",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _respect_rate_limit(self) -> None:
        """Espera si es necesario para respetar rate limits."""
        if self._rate_limit_reset and self._rate_limit_remaining == 0:
            wait_seconds = (self._rate_limit_reset - datetime.now()).total_seconds()
            if wait_seconds > 0:
                logger.warning(f"Rate limit - esperando {wait_seconds:.0f}s")
                await asyncio.sleep(min(wait_seconds, 60))

        if self._last_request_time and self._request_delay > 0:
            elapsed = (datetime.now() - self._last_request_time).total_seconds()
            if elapsed < self._request_delay:
                await asyncio.sleep(self._request_delay - elapsed)

        self._last_request_time = datetime.now()

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Actualiza información de rate limit desde headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")

        if remaining and remaining.isdigit():
            self._rate_limit_remaining = int(remaining)

        if reset and reset.isdigit():
            self._rate_limit_reset = datetime.fromtimestamp(int(reset))

    async def _api_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> ScoutResult:
        """Realiza una request a la API de GitHub. Nunca lanza."""
        await self._respect_rate_limit()

        url = f"{self._base_url}{endpoint}"

        try:
            async with httpx.AsyncClient(
                timeout=REQUEST_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method,
                    url,
                    headers=self._get_headers(),
                    params=params,
                    json=json_body,
                )
        except httpx.TimeoutException:
            self._stats["errors"] += 1
            return ScoutResult(success=False, error=f"Timeout: {method} {endpoint}")
        except httpx.HTTPError as e:
            self._stats["errors"] += 1
            logger.error(f"API error ({method} {endpoint}): {e}")
            return ScoutResult(success=False, error=f"Network error: {e}")

        self._update_rate_limit(response)
        self._stats["api_calls"] += 1

        if response.is_success:
            try:
                data = response.json() if response.content else None
            except ValueError:
                self._stats["errors"] += 1
                logger.warning(f"Invalid JSON from {method} {endpoint}: {response.text[:80]!r}")
                return ScoutResult(
                    success=False,
                    error=f"Invalid JSON response (HTTP {response.status_code}): {response.text[:120]}",
                    status_code=response.status_code,
                    rate_limit_remaining=self._rate_limit_remaining,
                )
            return ScoutResult(
                success=True,
                data=data,
                status_code=response.status_code,
                rate_limit_remaining=self._rate_limit_remaining,
            )

        self._stats["errors"] += 1
        if response.status_code == 403 and self._rate_limit_remaining == 0:
            error = f"Rate limit excedido. Reset: {self._rate_limit_reset}"
        elif response.status_code == 404:
            error = "Not found"
        else:
            error = f"HTTP {response.status_code}: {response.text[:200]}"

        return ScoutResult(
            success=False,
            error=error,
            status_code=response.status_code,
            rate_limit_remaining=self._rate_limit_remaining,
        )

    @staticmethod
    def _raise_for(result: ScoutResult, action: str) -> None:
        if result.success:
            return
        message = f"{action} failed: {result.error}"
        if result.status_code == 403 and "Rate limit" in (result.error or ""):
            raise RateLimitExceededError(message, result.status_code)
        raise GitHubAPIError(message, result.status_code)

    @staticmethod
    def _as_dict(payload: Any) -> dict:
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _decode_content(payload: Any) -> str:
        content = payload.get("content", "") if isinstance(payload, dict) else ""
        encoding = payload.get("encoding", "base64") if isinstance(payload, dict) else ""
        if encoding == "base64":
            return base64.b64decode(content).decode("utf-8")
        return content

    # ───────────────────────────────────────────────────────────────────────────
    # OPERACIONES
    # ───────────────────────────────────────────────────────────────────────────

    async def get_repository(self, full_name: str) -> ScoutResult:
        """Obtiene los metadatos de un repositorio (owner/name)."""
        return await self._api_request("GET", f"/repos/{full_name}")

    async def get_pushed_at(self, full_name: str) -> datetime:
        """
        Retorna el timestamp del último push (timezone-aware, UTC).

        Raises:
            GitHubAPIError: si la API falla o el campo no existe
        """
        result = await self.get_repository(full_name)
        self._raise_for(result, f"GET repo {full_name}")

        pushed_at = self._as_dict(result.data).get("pushed_at")
        if not pushed_at:
            raise GitHubAPIError(f"Repository {full_name} has no pushed_at field")
        return datetime.fromisoformat(pushed_at.replace("Z", "+00:00"))

    async def get_readme(self, full_name: str) -> ScoutResult:
        """Obtiene el README decodificado de un repositorio."""
        result = await self._api_request("GET", f"/repos/{full_name}/readme")

        if not result.success:
            return result

        try:
            return ScoutResult(success=True, data=self._decode_content(result.data))
        except (ValueError, UnicodeDecodeError) as e:
            return ScoutResult(success=False, error=f"Decode error: {e}")

    async def list_contents(self, full_name: str, path: str = "") -> ScoutResult:
        """
        Lista un directorio del repositorio.

        Returns:
            ScoutResult con `data` = list[ContentEntry] en el orden de la API
        """
        path = path.strip("/")
        result = await self._api_request("GET", f"/repos/{full_name}/contents/{path}")

        if not result.success:
            return result

        if not isinstance(result.data, list):
            return ScoutResult(success=False, error=f"'{path}' is a file, not a directory")

        entries = [
            ContentEntry(type="dir" if item.get("type") == "dir" else "file", path=item.get("path", ""))
            for item in result.data
        ]
        return ScoutResult(success=True, data=entries)

    async def download_file_content(self, full_name: str, file_path: str) -> ScoutResult:
        """Descarga y decodifica el contenido de un archivo."""
        file_path = file_path.strip("/")
        result = await self._api_request("GET", f"/repos/{full_name}/contents/{file_path}")

        if not result.success:
            return result

        if isinstance(result.data, list):
            return ScoutResult(success=False, error=f"'{file_path}' is a directory")

        try:
            return ScoutResult(success=True, data=self._decode_content(result.data))
        except (ValueError, UnicodeDecodeError) as e:
            return ScoutResult(success=False, error=f"Decode error: {e}")

    async def create_issue(self, full_name: str, title: str, body: str) -> str:
        """
        Crea un issue y retorna su URL. Sin reintentos.

        Raises:
            GitHubAPIError: ante cualquier respuesta no-2xx o fallo de red
        """
        result = await self._api_request(
            "POST",
            f"/repos/{full_name}/issues",
            json_body={"title": title, "body": body},
        )
        if not result.success and 200 <= result.status_code < 300:
            # el POST fue aceptado: el issue existe aunque el cuerpo sea ilegible
            logger.warning(f"Issue creado en {full_name} sin respuesta legible: {result.error}")
            self._stats["issues_created"] += 1
            return ""
        self._raise_for(result, f"Create issue on {full_name}")

        self._stats["issues_created"] += 1
        url = self._as_dict(result.data).get("html_url", "")
        logger.info(f"Issue creado en {full_name}: {url}")
        return url

    def get_status(self) -> dict:
        """Retorna estado del Scout."""
        return {
            "has_token": bool(self._token),
            "rate_limit_remaining": self._rate_limit_remaining,
            "rate_limit_reset": (
                self._rate_limit_reset.isoformat()
                if self._rate_limit_reset else None
            ),
            "stats": dict(self._stats),
        }
