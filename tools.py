"""
MOMENTUM TOOLS v0.1
===================
Herramientas expuestas al modelo durante la investigación.

Implementa:
- Declaraciones JSON-schema (proposeChange, listFiles, getFile)
- Decodificación validada de llamadas (unión etiquetada)
- Context Gatherer: listado y lectura de archivos remotos como texto
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from scout import ScoutAgent

logger = logging.getLogger("momentum.tools")

PROPOSE_CHANGE = "proposeChange"
LIST_FILES = "listFiles"
GET_FILE = "getFile"

MAX_FILE_CHARS = 12_000
MAX_LISTING_ENTRIES = 200

TOOL_DECLARATIONS: list[dict] = [
    {
        "name": PROPOSE_CHANGE,
        "description": (
            "Submit ONE concrete improvement that unblocks the repository. "
            "Calling this ends research and sends the proposal to review."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "targetFile": {"type": "STRING", "description": "Path of the file to change."},
                "description": {"type": "STRING", "description": "One-sentence summary of the change."},
                "codeChange": {"type": "STRING", "description": "The proposed code or text change."},
            },
            "required": ["targetFile", "description", "codeChange"],
        },
    },
    {
        "name": LIST_FILES,
        "description": "List files and directories at a path in the repository (root if omitted).",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "path": {"type": "STRING", "description": "Directory path, e.g. 'src'."},
            },
        },
    },
    {
        "name": GET_FILE,
        "description": "Read the text content of one file in the repository.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "path": {"type": "STRING", "description": "File path, e.g. 'README.md'."},
            },
            "required": ["path"],
        },
    },
]


class ToolDispatchError(Exception):
    """Llamada a herramienta inválida o fallida; se devuelve al modelo como texto."""
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# LLAMADAS DECODIFICADAS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ProposeChange:
    target_file: str
    description: str
    code_change: str


@dataclass(frozen=True)
class ListFiles:
    path: str = ""


@dataclass(frozen=True)
class GetFile:
    path: str


ToolCall = Union[ProposeChange, ListFiles, GetFile]


def _required_string(args: dict, key: str, tool: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolDispatchError(f"{tool}: '{key}' must be a non-empty string")
    return value


def decode_tool_call(name: str, args: Optional[dict]) -> ToolCall:
    """
    Valida los argumentos crudos del modelo contra la forma de cada herramienta.

    Raises:
        ToolDispatchError: herramienta desconocida o argumentos inválidos
    """
    if args is not None and not isinstance(args, dict):
        raise ToolDispatchError(f"{name}: arguments must be an object")
    args = args or {}

    if name == PROPOSE_CHANGE:
        return ProposeChange(
            target_file=_required_string(args, "targetFile", name).strip(),
            description=_required_string(args, "description", name).strip(),
            code_change=_required_string(args, "codeChange", name),
        )

    if name == LIST_FILES:
        path = args.get("path", "")
        if path is None:
            path = ""
        if not isinstance(path, str):
            raise ToolDispatchError(f"{name}: 'path' must be a string")
        return ListFiles(path=path.strip())

    if name == GET_FILE:
        return GetFile(path=_required_string(args, "path", name).strip())

    raise ToolDispatchError(f"Unknown tool '{name}'. Available: {PROPOSE_CHANGE}, {LIST_FILES}, {GET_FILE}")


# ═══════════════════════════════════════════════════════════════════════════════
# CONTEXT GATHERER
# ═══════════════════════════════════════════════════════════════════════════════

LOCAL_UNAVAILABLE = "ERROR: file exploration is unavailable for local repositories."


class ContextGatherer:
    """
    Lecturas remotas bajo demanda. Nunca lanza: todo fallo vuelve como
    texto descriptivo para que una mala consulta no aborte el ciclo.
    """

    def __init__(self, scout: ScoutAgent):
        self._scout = scout

    async def list_files(self, repo_ref: str, path: str = "", is_remote: bool = True) -> str:
        if not is_remote:
            return LOCAL_UNAVAILABLE

        result = await self._scout.list_contents(repo_ref, path)
        if not result.success:
            logger.debug(f"listFiles {repo_ref}:{path or '/'} -> {result.error}")
            return f"ERROR: cannot list '{path or '/'}': {result.error}"

        entries = result.data or []
        if not entries:
            return f"(empty directory: '{path or '/'}')"

        lines = [f"{entry.type}: {entry.path}" for entry in entries[:MAX_LISTING_ENTRIES]]
        if len(entries) > MAX_LISTING_ENTRIES:
            lines.append(f"... ({len(entries) - MAX_LISTING_ENTRIES} more entries)")
        return "\n".join(lines)

    async def get_file(self, repo_ref: str, path: str, is_remote: bool = True) -> str:
        if not is_remote:
            return LOCAL_UNAVAILABLE

        result = await self._scout.download_file_content(repo_ref, path)
        if not result.success:
            logger.debug(f"getFile {repo_ref}:{path} -> {result.error}")
            return f"ERROR: cannot read '{path}': {result.error}"

        content = result.data or ""
        if len(content) > MAX_FILE_CHARS:
            return content[:MAX_FILE_CHARS] + f"\n... (truncated, {len(content)} chars total)"
        return content

    async def dispatch(self, call: ToolCall, repo_ref: str, is_remote: bool = True) -> str:
        """Ejecuta una herramienta de lectura ya decodificada."""
        if isinstance(call, ListFiles):
            return await self.list_files(repo_ref, call.path, is_remote)
        if isinstance(call, GetFile):
            return await self.get_file(repo_ref, call.path, is_remote)
        raise ToolDispatchError(f"{type(call).__name__} is not a context tool")
