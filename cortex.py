"""
MOMENTUM CORTEX v0.2
====================
Memoria de lecciones aprendidas con recuperación por similitud vectorial.

Implementa:
- Embeddings vía el proveedor de modelos (vector vacío = sin señal)
- Persistencia append-only en el almacén durable
- Búsqueda: ventana de recencia + similitud coseno en proceso
"""

import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from dotenv import load_dotenv

from router import BaseProvider, RouterError
from storage import MomentumStore, StorageError

# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURACIÓN
# ═══════════════════════════════════════════════════════════════════════════════

load_dotenv(Path.cwd() / ".env")

MEMORY_WINDOW = int(os.getenv("MEMORY_WINDOW", "50"))
DEFAULT_RECALL_K = 3

logger = logging.getLogger("momentum.cortex")


# ═══════════════════════════════════════════════════════════════════════════════
# ESTRUCTURAS DE DATOS
# ═══════════════════════════════════════════════════════════════════════════════

class MemoryType(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    TIP = "tip"


@dataclass(frozen=True)
class Memory:
    """Una lección persistida. `similarity` sólo existe en resultados de búsqueda."""
    text: str
    type: MemoryType
    repo_ref: str = ""
    embedding: List[float] = field(default_factory=list)
    timestamp: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    similarity: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Memory":
        return cls(
            id=data.get("id"),
            text=data["text"],
            type=MemoryType(data["type"]),
            repo_ref=data.get("repo_ref", ""),
            embedding=list(data.get("embedding") or []),
            timestamp=data.get("timestamp", ""),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "type": self.type.value,
            "repo_ref": self.repo_ref,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
            "similarity": self.similarity,
        }


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """0.0 para vectores vacíos, de distinta longitud o de norma cero."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0

    a = np.asarray(vec_a, dtype=float)
    b = np.asarray(vec_b, dtype=float)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))


def format_memories(memories: Sequence[Memory]) -> str:
    """Renderiza lecciones recuperadas para un prompt."""
    if not memories:
        return "No past lessons recorded for this repository."
    return "\n".join(f"- [{m.type.value.upper()}] {m.text}" for m in memories)


# ═══════════════════════════════════════════════════════════════════════════════
# CORTEX
# ═══════════════════════════════════════════════════════════════════════════════

class Cortex:
    """Único escritor/lector de memorias."""

    def __init__(
        self,
        store: MomentumStore,
        embedder: BaseProvider,
        window: int = MEMORY_WINDOW,
    ):
        self._store = store
        self._embedder = embedder
        self.window = window

    async def embed(self, text: str) -> List[float]:
        """Embedding del texto; [] si el proveedor falla."""
        try:
            return await self._embedder.embed(text)
        except RouterError as e:
            logger.warning(f"Embedding no disponible ({e}); memoria sin vector")
            return []

    async def add_memory(
        self,
        text: str,
        memory_type: MemoryType,
        repo_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Embebe y persiste una lección.

        Raises:
            StorageError: si el almacén no está disponible (nunca se silencia)
        """
        memory_type = MemoryType(memory_type)
        logger.info(f"[Memory] Embedding new {memory_type.value} memory: \"{text[:50]}...\"")
        embedding = await self.embed(text)

        memory_id = self._store.add_memory(
            text=text,
            memory_type=memory_type.value,
            repo_ref=repo_ref or "",
            embedding=embedding,
            metadata=metadata or {},
            created_at=datetime.now().astimezone().isoformat(),
        )
        logger.info(f"Memoria [{memory_id}] guardada ({memory_type.value}, repo={repo_ref or '-'})")
        return memory_id

    async def search(
        self,
        query: str,
        k: int = DEFAULT_RECALL_K,
        repo_ref: Optional[str] = None,
    ) -> List[Memory]:
        """
        Top-k memorias por similitud coseno dentro de la ventana reciente.

        Aproximación sesgada a recencia: sólo se rankean las últimas
        `window` memorias, no el corpus completo.
        """
        if k <= 0:
            return []

        query_vector = await self.embed(query)
        if not query_vector:
            return []

        try:
            candidates = self._store.recent_memories(limit=self.window, repo_ref=repo_ref)
        except StorageError as e:
            logger.warning(f"Lectura de memorias falló: {e}")
            return []

        scored = []
        for row in candidates:
            embedding = row.get("embedding")
            if not embedding:
                continue
            memory = Memory.from_dict(row)
            scored.append(replace(memory, similarity=cosine_similarity(query_vector, embedding)))

        # sort estable: los empates conservan el orden de recencia
        scored.sort(key=lambda m: m.similarity, reverse=True)
        results = scored[:k]

        logger.info(f"[Memory] Recalled {len(results)} lessons for query: \"{query[:30]}...\"")
        return results
