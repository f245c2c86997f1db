"""
MOMENTUM PULSE v0.1
===================
Detector de estancamiento de repositorios.

Implementa:
- Resolución de referencias (URL/shorthand de GitHub o ruta local)
- Último push vía API de GitHub (remoto)
- Último commit vía `git log` (local)
- Clasificación ACTIVE / STAGNANT (umbral estricto: días > 3.0)
"""

import asyncio
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from scout import GitHubAPIError, ScoutAgent

# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURACIÓN
# ═══════════════════════════════════════════════════════════════════════════════

load_dotenv(Path.cwd() / ".env")

STAGNATION_DAYS = float(os.getenv("STAGNATION_DAYS", "3.0"))
GIT_TIMEOUT_SECONDS = 15.0

SECONDS_PER_DAY = 24 * 60 * 60

GITHUB_URL_PATTERN = re.compile(r"github\.com[/:]([^/\s]+)/([^/\s?#]+)")
SHORTHAND_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")

logger = logging.getLogger("momentum.pulse")


# ═══════════════════════════════════════════════════════════════════════════════
# ESTRUCTURAS DE DATOS
# ═══════════════════════════════════════════════════════════════════════════════

class PulseCheckError(Exception):
    """El pulso no pudo determinarse (host/VCS inalcanzable o referencia inválida)."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


@dataclass(frozen=True)
class RepoReference:
    """Referencia normalizada a un repositorio."""

    ref: str  # owner/name o ruta absoluta
    is_remote: bool


@dataclass
class PulseResult:
    """Resultado de un chequeo de pulso."""

    repo_ref: str
    is_remote: bool
    last_activity: datetime
    days_since: float
    is_stagnant: bool

    def to_dict(self) -> dict:
        return {
            "repo_ref": self.repo_ref,
            "is_remote": self.is_remote,
            "last_activity": self.last_activity.isoformat(),
            "days_since": self.days_since,
            "is_stagnant": self.is_stagnant,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# RESOLUCIÓN DE REFERENCIAS
# ═══════════════════════════════════════════════════════════════════════════════

def parse_repo_ref(raw: str) -> RepoReference:
    """
    Clasifica una referencia como remota (GitHub) o local.

    `owner/name` sólo se trata como shorthand remoto si no existe
    un directorio local con ese nombre.

    Raises:
        PulseCheckError: si la referencia está vacía
    """
    value = (raw or "").strip()
    if not value:
        raise PulseCheckError("Empty repository reference")

    match = GITHUB_URL_PATTERN.search(value)
    if match:
        owner, name = match.group(1), match.group(2)
        name = re.sub(r"\.git$", "", name)
        return RepoReference(ref=f"{owner}/{name}", is_remote=True)

    if SHORTHAND_PATTERN.match(value) and not Path(value).exists():
        return RepoReference(ref=re.sub(r"\.git$", "", value), is_remote=True)

    return RepoReference(ref=str(Path(value).expanduser().resolve()), is_remote=False)


def normalize_repo_ref(raw: str) -> str:
    """Clave canónica de un repositorio (owner/name o ruta absoluta)."""
    return parse_repo_ref(raw).ref


def is_stagnant(days_since: float, threshold: float = STAGNATION_DAYS) -> bool:
    """Exactamente en el umbral el repositorio sigue ACTIVE."""
    return days_since > threshold


# ═══════════════════════════════════════════════════════════════════════════════
# PULSE CHECKER
# ═══════════════════════════════════════════════════════════════════════════════

class PulseChecker:
    """Resuelve la última actividad de un repositorio y lo clasifica."""

    def __init__(
        self,
        scout: Optional[ScoutAgent] = None,
        threshold_days: float = STAGNATION_DAYS,
    ):
        self._scout = scout or ScoutAgent()
        self.threshold_days = threshold_days

    async def check(self, raw_ref: str, now: Optional[datetime] = None) -> PulseResult:
        """
        Chequea el pulso de un repositorio.

        Raises:
            PulseCheckError: ante cualquier fallo de resolución
        """
        reference = parse_repo_ref(raw_ref)
        logger.info(f"Pulse check: {reference.ref}")

        if reference.is_remote:
            last_activity = await self._remote_last_activity(reference.ref)
        else:
            last_activity = await self._local_last_activity(reference.ref)

        now = now or datetime.now(timezone.utc)
        days_since = max(0.0, (now - last_activity).total_seconds() / SECONDS_PER_DAY)
        stagnant = is_stagnant(days_since, self.threshold_days)

        logger.info(
            f"Pulse {reference.ref}: {days_since:.1f} days "
            f"({'STAGNANT' if stagnant else 'ACTIVE'})"
        )

        return PulseResult(
            repo_ref=reference.ref,
            is_remote=reference.is_remote,
            last_activity=last_activity,
            days_since=days_since,
            is_stagnant=stagnant,
        )

    async def _remote_last_activity(self, full_name: str) -> datetime:
        try:
            return await self._scout.get_pushed_at(full_name)
        except GitHubAPIError as e:
            raise PulseCheckError(f"Remote pulse check failed for {full_name}: {e}", e) from e
        except ValueError as e:
            raise PulseCheckError(f"Invalid pushed_at for {full_name}: {e}", e) from e

    async def _local_last_activity(self, path: str) -> datetime:
        if not Path(path).is_dir():
            raise PulseCheckError(f"No repository at path: {path}")

        output = await asyncio.to_thread(run_git, path, ["log", "-1", "--format=%ct"])
        try:
            return datetime.fromtimestamp(int(output), tz=timezone.utc)
        except ValueError as e:
            raise PulseCheckError(f"Unexpected git log output for {path}: {output!r}", e) from e


def run_git(repo_path: str, args: list) -> str:
    """
    Ejecuta git sobre `repo_path` y retorna stdout.

    Raises:
        PulseCheckError: si git no está disponible o el comando falla
    """
    cmd = ["git", "-C", repo_path] + args
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            encoding="utf-8",
            errors="ignore",
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except subprocess.CalledProcessError as e:
        raise PulseCheckError(f"git {args[0]} failed in {repo_path}: {(e.stderr or '').strip()}", e) from e
    except (OSError, subprocess.TimeoutExpired) as e:
        raise PulseCheckError(f"git unavailable for {repo_path}: {e}", e) from e

    return (result.stdout or "").strip()
