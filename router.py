"""
MOMENTUM MODEL ROUTER v0.2
==========================
Acceso a modelos generativos (Gemini REST) para investigación, evaluación
y embeddings.

Implementa:
- Chat con herramientas declaradas (function calling)
- Completions simples para el Gatekeeper
- Embeddings de texto (text-embedding-004)
- Taxonomía de errores: transitorios (429/503/overload) vs fatales
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import httpx
from dotenv import load_dotenv

# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURACIÓN
# ═══════════════════════════════════════════════════════════════════════════════

load_dotenv(Path.cwd() / ".env")

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", os.getenv("GOOGLE_API_KEY", ""))

RESEARCH_MODEL = os.getenv("MOMENTUM_MODEL", "gemini-2.0-flash")
EVALUATOR_MODEL = os.getenv("MOMENTUM_EVALUATOR_MODEL", "gemini-2.0-flash")
EMBEDDING_MODEL = os.getenv("MOMENTUM_EMBEDDING_MODEL", "text-embedding-004")

BASE_TIMEOUT = 60.0
TRANSIENT_STATUS_CODES = {429, 503}

logger = logging.getLogger("momentum.router")


# ═══════════════════════════════════════════════════════════════════════════════
# ERRORES
# ═══════════════════════════════════════════════════════════════════════════════

class RouterError(Exception):
    """Error base del router."""
    pass


class ProviderError(RouterError):
    """Error no recuperable del proveedor (auth, request inválida, red)."""
    pass


class ProviderTransientError(ProviderError):
    """Sobrecarga o rate limit del proveedor; reintentable."""
    pass


class EmbeddingError(RouterError):
    """El proveedor no devolvió un embedding utilizable."""
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# TIPOS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class FunctionCall:
    """Llamada a herramienta emitida por el modelo (argumentos sin validar)."""
    name: str
    args: dict = field(default_factory=dict)


@dataclass
class ModelTurn:
    """Respuesta de un turno del modelo."""
    text: str = ""
    function_calls: list[FunctionCall] = field(default_factory=list)  # en orden de aparición
    content: dict = field(default_factory=dict)  # contenido crudo, para el historial
    tokens_used: int = 0

    @property
    def function_call(self) -> Optional[FunctionCall]:
        return self.function_calls[0] if self.function_calls else None

    @property
    def has_function_call(self) -> bool:
        return bool(self.function_calls)


# ═══════════════════════════════════════════════════════════════════════════════
# PROVEEDORES
# ═══════════════════════════════════════════════════════════════════════════════

class BaseProvider(ABC):
    """Clase base para proveedores de LLM."""

    def __init__(self, name: str, api_key: str, base_url: str, model: str):
        self.name = name
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.total_calls = 0
        self.total_tokens = 0

    @abstractmethod
    async def generate(
        self,
        contents: list[dict],
        system_instruction: Optional[str] = None,
        tools: Optional[list[dict]] = None,
        temperature: float = 0.4,
    ) -> ModelTurn:
        """Ejecuta un turno de chat (opcionalmente con herramientas)."""
        pass

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Convierte texto en un vector de longitud fija."""
        pass

    async def complete(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.2,
    ) -> str:
        """Completion de un solo mensaje, sin herramientas."""
        turn = await self.generate(
            [user_message(prompt)],
            system_instruction=system_instruction,
            temperature=temperature,
        )
        return turn.text


class GeminiProvider(BaseProvider):
    """Proveedor Google Gemini vía REST."""

    def __init__(
        self,
        model: str = RESEARCH_MODEL,
        api_key: Optional[str] = None,
        embedding_model: str = EMBEDDING_MODEL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            name="gemini",
            api_key=GEMINI_API_KEY if api_key is None else api_key,
            base_url=GEMINI_API_BASE,
            model=model,
        )
        self.embedding_model = embedding_model
        self._transport = transport

    def _url(self, model: str, method: str) -> str:
        model_name = model.split("/")[-1]
        return f"{self.base_url.rstrip('/')}/models/{model_name}:{method}"

    async def _post(self, url: str, payload: dict) -> dict:
        if not self.api_key:
            raise ProviderError("GEMINI_API_KEY not configured")

        try:
            async with httpx.AsyncClient(timeout=BASE_TIMEOUT, transport=self._transport) as client:
                response = await client.post(
                    url,
                    params={"key": self.api_key},
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Timeout calling {self.name}: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Network error calling {self.name}: {e}") from e

        self.total_calls += 1

        if response.status_code in TRANSIENT_STATUS_CODES or (
            response.status_code >= 500 and "overloaded" in response.text.lower()
        ):
            raise ProviderTransientError(
                f"{self.name} overloaded (HTTP {response.status_code}): {response.text[:200]}"
            )
        if not response.is_success:
            raise ProviderError(f"{self.name} HTTP {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.name} returned invalid JSON (HTTP {response.status_code}): {response.text[:200]}"
            ) from e
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} returned unexpected payload: {type(data).__name__}")
        return data

    async def generate(
        self,
        contents: list[dict],
        system_instruction: Optional[str] = None,
        tools: Optional[list[dict]] = None,
        temperature: float = 0.4,
    ) -> ModelTurn:
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": temperature},
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        if tools:
            payload["tools"] = [{"functionDeclarations": tools}]

        data = await self._post(self._url(self.model, "generateContent"), payload)
        return parse_generate_response(data)

    async def embed(self, text: str) -> list[float]:
        model_name = self.embedding_model.split("/")[-1]
        data = await self._post(
            self._url(model_name, "embedContent"),
            {
                "model": f"models/{model_name}",
                "content": {"parts": [{"text": text}]},
            },
        )
        values = (data.get("embedding") or {}).get("values")
        if not values:
            raise EmbeddingError("Embedding failed: no values returned")
        return [float(v) for v in values]


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS DE FORMATO
# ═══════════════════════════════════════════════════════════════════════════════

def user_message(text: str) -> dict:
    return {"role": "user", "parts": [{"text": text}]}


def function_responses_message(results: list[tuple[str, str]]) -> dict:
    """
    Respuestas a todas las llamadas de un turno, en el mismo orden,
    dentro de un único turno de usuario.
    """
    return {
        "role": "user",
        "parts": [
            {"functionResponse": {"name": name, "response": {"result": result}}}
            for name, result in results
        ],
    }


def function_response_message(name: str, result: str) -> dict:
    """Resultado de una sola herramienta, devuelto al modelo como turno de usuario."""
    return function_responses_message([(name, result)])


def parse_generate_response(data: dict) -> ModelTurn:
    """Extrae el texto y todas las llamadas a herramientas del primer candidato."""
    candidates = data.get("candidates") or []
    if not candidates:
        feedback = data.get("promptFeedback", {})
        raise ProviderError(f"No candidates returned (feedback={feedback})")

    content = candidates[0].get("content") or {"role": "model", "parts": []}
    content.setdefault("role", "model")

    texts = []
    function_calls = []
    for part in content.get("parts", []):
        if "functionCall" in part:
            fc = part["functionCall"]
            args = fc.get("args")
            function_calls.append(FunctionCall(
                name=fc.get("name", ""),
                args=args if isinstance(args, dict) else {},
            ))
        elif "text" in part:
            texts.append(part["text"])

    tokens = (data.get("usageMetadata") or {}).get("totalTokenCount", 0)

    return ModelTurn(
        text="".join(texts),
        function_calls=function_calls,
        content=content,
        tokens_used=tokens,
    )
