"""
MOMENTUM MCP SERVER v0.1
========================
Servidor MCP del pipeline de remediación de estancamiento.

Módulos integrados:
- Pulse: detección de inactividad (local o GitHub)
- Researcher/Gatekeeper: propuesta con herramientas + revisión automática
- Cortex: memoria de lecciones aprendidas
- Engine: ciclos plan/execute, tracking y patrulla

Total: 6 tools
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP

# ═══════════════════════════════════════════════════════════════════════════════
# TIMEOUT HELPER
# ═══════════════════════════════════════════════════════════════════════════════

DEFAULT_TOOL_TIMEOUT = 15.0


async def with_timeout(
    coro: Any,
    timeout: Optional[float] = DEFAULT_TOOL_TIMEOUT,
    operation_name: str = "operation"
) -> dict:
    """
    Wraps an async coroutine with timeout protection.

    `timeout=None` runs without an outer deadline: the cycle enforces its
    own per-turn and per-request budgets and must persist its outcome.

    Returns:
        dict: {"success": True, "result": ...} on success
              {"success": False, "error": ..., "error_type": ...} on failure
    """
    try:
        result = await asyncio.wait_for(coro, timeout=timeout)
        return {"success": True, "result": result}
    except asyncio.TimeoutError:
        return {
            "success": False,
            "error": f"Timeout after {timeout}s in {operation_name}",
            "suggestion": "Check GitHub/Gemini connectivity or lower MAX_RESEARCH_TURNS",
            "error_type": "TIMEOUT",
        }
    except ProposalStateError as e:
        logger.warning(f"{operation_name} refused: {e}")
        return {
            "success": False,
            "error": str(e),
            "error_type": type(e).__name__,
        }
    except Exception as e:
        logger.exception(f"{operation_name} failed")
        return {
            "success": False,
            "error": str(e),
            "error_type": type(e).__name__,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURACIÓN DE PATHS
# ═══════════════════════════════════════════════════════════════════════════════

SERVER_DIR = Path(__file__).parent
PROJECT_ROOT = Path.cwd()

load_dotenv(PROJECT_ROOT / ".env")
if not os.getenv("GEMINI_API_KEY"):
    load_dotenv(SERVER_DIR / ".env")

# los módulos del pipeline leen su configuración al importarse
from engine import ProposalStateError, current_cycle  # noqa: E402

AI_DIR = PROJECT_ROOT / os.getenv("AI_CORE_DIR", ".ai")
LOGS_DIR = AI_DIR / "logs"


# ═══════════════════════════════════════════════════════════════════════════════
# LOGGING CON FILTRO DE SECRETOS
# ═══════════════════════════════════════════════════════════════════════════════

class SecretFilter(logging.Filter):
    """Filtra información sensible de los logs (API keys, tokens)."""

    PATTERNS = [
        r"ghp_[a-zA-Z0-9]+",            # GitHub tokens
        r"github_pat_[a-zA-Z0-9_]+",    # GitHub fine-grained tokens
        r"AIza[0-9A-Za-z_-]{20,}",      # Google API keys
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if hasattr(record, "msg"):
            msg = str(record.msg)
            for pattern in self.PATTERNS:
                msg = re.sub(pattern, "[REDACTED]", msg)
            record.msg = msg
        return True


class CycleContextFilter(logging.Filter):
    """Añade `cycle_id` a cada registro a partir del ciclo en curso."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle_id = current_cycle.get()[:8]
        return True


def setup_logging() -> logging.Logger:
    """Configura logging a consola y a .ai/logs/momentum.log."""
    LOGS_DIR.mkdir(parents=True, exist_ok=True)

    log_file = LOGS_DIR / "momentum.log"
    log_level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(cycle_id)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    file_handler.addFilter(SecretFilter())
    file_handler.addFilter(CycleContextFilter())

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(SecretFilter())
    console_handler.addFilter(CycleContextFilter())

    root = logging.getLogger("momentum")
    root.setLevel(log_level)
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # httpx loguea cada request con la URL completa (incluye ?key=)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


logger = logging.getLogger("momentum.mcp")


def get_engine():
    from engine import get_engine as _get_engine
    return _get_engine()


# ═══════════════════════════════════════════════════════════════════════════════
# FASTMCP SERVER
# ═══════════════════════════════════════════════════════════════════════════════

mcp = FastMCP(
    name="momentum",
    instructions="""
    Momentum - agente de remediación de repositorios estancados.

    Flujo recomendado:
    1. check_repository(repo_ref): pulso + propuesta revisada si está estancado
    2. approve_proposal(cycle_id) o reject_proposal(cycle_id, reason)
    3. list_repositories para ver el estado de todo lo vigilado
    """,
)


# ═══════════════════════════════════════════════════════════════════════════════
# CYCLE TOOLS
# ═══════════════════════════════════════════════════════════════════════════════

async def check_repository(repo_ref: str, note: str = "") -> dict:
    """
    Chequea el pulso de un repositorio (URL de GitHub, owner/name o ruta local).

    Si lleva más de STAGNATION_DAYS sin actividad, investiga y devuelve una
    propuesta ya aprobada por el Gatekeeper, identificada por `cycle_id`.
    """
    logger.info(f"check_repository: repo_ref='{repo_ref}'")
    metadata = {"note": note} if note else None

    result = await with_timeout(
        get_engine().plan(repo_ref, metadata),
        timeout=None,
        operation_name="plan",
    )
    if not result["success"]:
        return result
    return result["result"].to_dict()


async def approve_proposal(cycle_id: str) -> dict:
    """Aprueba una propuesta pendiente y abre el issue en GitHub."""
    logger.info(f"approve_proposal: cycle_id={cycle_id}")
    engine = get_engine()

    proposal = engine.load_proposal(cycle_id)
    if proposal is None:
        return {"success": False, "error": f"Unknown cycle_id: {cycle_id}"}

    result = await with_timeout(
        engine.execute(proposal),
        timeout=None,
        operation_name="execute",
    )
    if not result["success"]:
        return result
    return result["result"].to_dict()


async def reject_proposal(cycle_id: str, reason: str = "") -> dict:
    """Rechaza una propuesta pendiente; el motivo se guarda como lección negativa."""
    logger.info(f"reject_proposal: cycle_id={cycle_id}")
    engine = get_engine()

    proposal = engine.load_proposal(cycle_id)
    if proposal is None:
        return {"success": False, "error": f"Unknown cycle_id: {cycle_id}"}

    result = await with_timeout(
        engine.reject(proposal, reason or None),
        timeout=None,
        operation_name="reject",
    )
    if not result["success"]:
        return result
    return {"success": True, "cycle_id": cycle_id, "repo_ref": proposal.repo_ref}


# ═══════════════════════════════════════════════════════════════════════════════
# TRACKING TOOLS
# ═══════════════════════════════════════════════════════════════════════════════

async def list_repositories() -> dict:
    """Lista los repositorios vigilados con su último estado."""
    records = await asyncio.to_thread(get_engine().list_repos)
    return {
        "success": True,
        "count": len(records),
        "repositories": [r.to_dict() for r in records],
    }


async def untrack_repository(repo_ref: str) -> dict:
    """Deja de vigilar un repositorio (borra su registro, conserva memorias)."""
    logger.info(f"untrack_repository: repo_ref='{repo_ref}'")
    return await asyncio.to_thread(get_engine().untrack, repo_ref)


async def run_patrol(concurrency: int = 3, maintenance_only: bool = False) -> dict:
    """
    Ejecuta check sobre todos los repositorios vigilados.

    Con `maintenance_only=True` solo refresca pulso y estado, sin consultar
    al modelo ni generar propuestas.
    """
    result = await with_timeout(
        get_engine().patrol(concurrency, maintenance_only=maintenance_only),
        timeout=None,
        operation_name="patrol",
    )
    if not result["success"]:
        return result
    cycles = result["result"]
    return {
        "success": True,
        "count": len(cycles),
        "results": [c.to_dict() for c in cycles],
    }


for _tool in (
    check_repository,
    approve_proposal,
    reject_proposal,
    list_repositories,
    untrack_repository,
    run_patrol,
):
    mcp.tool()(_tool)


# ═══════════════════════════════════════════════════════════════════════════════
# MCP RESOURCES
# ═══════════════════════════════════════════════════════════════════════════════

@mcp.resource("momentum://docs/overview")
def get_overview() -> str:
    """Overview of Momentum MCP capabilities."""
    return """# Momentum MCP - Quick Reference

## Cycle
- `check_repository`: pulse check; researches a proposal when stagnant
- `approve_proposal`: file the proposal as a GitHub issue (once)
- `reject_proposal`: discard it and record the lesson

## Tracking
- `list_repositories`, `untrack_repository`, `run_patrol`

## API Key Checklist (.env)
- GITHUB_TOKEN: remote pulse, file exploration and issue creation
- GEMINI_API_KEY: research, review and embeddings
"""


def main() -> None:
    setup_logging()
    logger.info("=" * 60)
    logger.info("MOMENTUM MCP SERVER v0.1 - Iniciando...")
    logger.info(f"AI_DIR: {AI_DIR}")
    logger.info(f"LOG_LEVEL: {os.getenv('LOG_LEVEL', 'INFO')}")
    logger.info("=" * 60)
    mcp.run()


# ═══════════════════════════════════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    main()
