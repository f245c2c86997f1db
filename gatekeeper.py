"""
MOMENTUM GATEKEEPER v0.1
========================
Revisor automático de propuestas antes de exponerlas a un humano.

Implementa:
- Rúbrica fija (seguridad, relevancia, calidad) con un modelo independiente
- Decodificación tolerante de JSON (sin fences ni texto alrededor)
- Backoff exponencial ante sobrecarga del proveedor (2s, 4s, 8s)
- Regla de aceptación: is_safe AND score >= umbral
- Cada rechazo se registra como memoria negativa del repositorio
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from dotenv import load_dotenv

from cortex import Cortex, MemoryType
from router import BaseProvider, ProviderError, ProviderTransientError

# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURACIÓN
# ═══════════════════════════════════════════════════════════════════════════════

load_dotenv(Path.cwd() / ".env")

ACCEPT_SCORE = int(os.getenv("ACCEPT_SCORE", "7"))
MAX_RETRIES = 3
INITIAL_BACKOFF = 2.0
TITLE_MAX_CHARS = 120

logger = logging.getLogger("momentum.gatekeeper")


GATEKEEPER_SYSTEM = """You are the GATEKEEPER, a senior engineer reviewing automated change proposals.

A research agent proposes ONE change to unblock a stagnant repository. Nothing
reaches a human unless you approve it.

## Rubric:
- SAFETY: no destructive operations, no secrets, no disabled checks, no data loss
- RELEVANCE: the change fits this repository and its stated purpose
- QUALITY: the change is concrete, correct and small enough to review

## Scoring:
- 1-3: harmful, wrong or irrelevant
- 4-6: plausible but vague, risky or low value
- 7-8: solid, actionable improvement
- 9-10: clearly valuable and safe

## Output Format:
Respond ONLY with a JSON object (no markdown, no text outside JSON):
{"score": <integer 1-10>, "reasoning": "<two or three sentences>", "isSafe": <true|false>}
"""

EVALUATION_PROMPT_TEMPLATE = """## Proposal for {repo_ref}

Target file: {target_file}
Description: {description}

### Proposed change:
```
{code_change}
```

### Repository context:
{context}
"""


# ═══════════════════════════════════════════════════════════════════════════════
# ESTRUCTURAS DE DATOS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Proposal:
    """Candidato de remediación; inmutable y consumido una sola vez por execute."""

    repo_ref: str
    target_file: str
    description: str
    code_change: str
    cycle_id: str

    @property
    def title(self) -> str:
        title = f"Momentum: {self.description}".replace("\n", " ").strip()
        if len(title) > TITLE_MAX_CHARS:
            title = title[: TITLE_MAX_CHARS - 3].rstrip() + "..."
        return title

    @property
    def body(self) -> str:
        return (
            "Automated improvement proposed to unblock development.\n"
            f"Target File: {self.target_file}\n\n"
            f"{self.description}\n\n"
            "Proposed Change:\n"
            f"```\n{self.code_change}\n```\n\n"
            f"_cycle: {self.cycle_id}_"
        )

    def to_dict(self) -> dict:
        return {
            "repo_ref": self.repo_ref,
            "target_file": self.target_file,
            "description": self.description,
            "code_change": self.code_change,
            "cycle_id": self.cycle_id,
            "title": self.title,
            "body": self.body,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Proposal":
        return cls(
            repo_ref=data["repo_ref"],
            target_file=data["target_file"],
            description=data["description"],
            code_change=data["code_change"],
            cycle_id=data["cycle_id"],
        )


@dataclass(frozen=True)
class Evaluation:
    """Veredicto del Gatekeeper. score=0 indica una evaluación fallida."""

    score: int
    reasoning: str
    is_safe: bool

    def is_accepted(self, threshold: int = ACCEPT_SCORE) -> bool:
        return self.is_safe and self.score >= threshold

    def to_dict(self) -> dict:
        return {"score": self.score, "reasoning": self.reasoning, "is_safe": self.is_safe}

    @classmethod
    def from_dict(cls, data: dict) -> "Evaluation":
        return cls(
            score=int(data["score"]),
            reasoning=data.get("reasoning", ""),
            is_safe=bool(data["is_safe"]),
        )

    @classmethod
    def failure(cls, reason: str) -> "Evaluation":
        return cls(score=0, reasoning=f"Evaluation failed: {reason}", is_safe=False)


class EvaluationParseError(ValueError):
    """La respuesta del evaluador no es el JSON esperado."""
    pass


def parse_evaluation(text: str) -> Evaluation:
    """
    Decodifica `{score, reasoning, isSafe}` ignorando fences y ruido alrededor.

    Raises:
        EvaluationParseError: si falta JSON o algún campo es inválido
    """
    cleaned = re.sub(r"```(?:json)?", "", text or "").strip()
    json_match = re.search(r"\{[\s\S]*\}", cleaned)
    if not json_match:
        raise EvaluationParseError(f"No JSON object in response: {cleaned[:120]!r}")

    try:
        data = json.loads(json_match.group())
    except json.JSONDecodeError as e:
        raise EvaluationParseError(f"Invalid JSON: {e}") from e

    score = data.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise EvaluationParseError(f"Invalid score: {score!r}")

    is_safe = data.get("isSafe", data.get("is_safe"))
    if isinstance(is_safe, str) and is_safe.lower() in ("true", "false"):
        is_safe = is_safe.lower() == "true"
    if not isinstance(is_safe, bool):
        raise EvaluationParseError(f"Invalid isSafe: {is_safe!r}")

    reasoning = data.get("reasoning", "")
    if not isinstance(reasoning, str):
        reasoning = json.dumps(reasoning)

    return Evaluation(
        score=min(10, max(1, int(round(score)))),
        reasoning=reasoning.strip(),
        is_safe=is_safe,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# GATEKEEPER
# ═══════════════════════════════════════════════════════════════════════════════

class Gatekeeper:
    """Evalúa propuestas y alimenta el ciclo de aprendizaje con los rechazos."""

    def __init__(
        self,
        provider: BaseProvider,
        cortex: Cortex,
        accept_score: int = ACCEPT_SCORE,
        max_retries: int = MAX_RETRIES,
        initial_backoff: float = INITIAL_BACKOFF,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._provider = provider
        self._cortex = cortex
        self.accept_score = accept_score
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self._sleep = sleep

        self._stats = {
            "evaluations": 0,
            "approvals": 0,
            "rejections": 0,
            "failures": 0,
        }

    def is_accepted(self, evaluation: Evaluation) -> bool:
        return evaluation.is_accepted(self.accept_score)

    async def _call_with_retry(self, prompt: str) -> str:
        """Reintenta sólo errores transitorios: backoff 2s, 4s, 8s."""
        last_error: Optional[ProviderTransientError] = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                wait_time = self.initial_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"Evaluator overloaded, retry {attempt}/{self.max_retries} in {wait_time:.0f}s"
                )
                await self._sleep(wait_time)
            try:
                return await self._provider.complete(prompt, system_instruction=GATEKEEPER_SYSTEM)
            except ProviderTransientError as e:
                last_error = e

        raise ProviderTransientError(
            f"Evaluator still overloaded after {self.max_retries} retries: {last_error}"
        )

    async def evaluate(self, proposal: Proposal, context: str = "") -> Evaluation:
        """
        Puntúa una propuesta. Nunca acepta por defecto: cualquier fallo
        produce score=0, is_safe=False.

        Raises:
            StorageError: si el rechazo no pudo registrarse como memoria
        """
        self._stats["evaluations"] += 1

        prompt = EVALUATION_PROMPT_TEMPLATE.format(
            repo_ref=proposal.repo_ref,
            target_file=proposal.target_file,
            description=proposal.description,
            code_change=proposal.code_change[:8000],
            context=context[:4000] or "(none)",
        )

        try:
            evaluation = parse_evaluation(await self._call_with_retry(prompt))
        except (ProviderError, EvaluationParseError) as e:
            logger.error(f"Evaluation failed for {proposal.repo_ref}: {e}")
            self._stats["failures"] += 1
            evaluation = Evaluation.failure(str(e))

        accepted = self.is_accepted(evaluation)
        logger.info(
            f"Gatekeeper {proposal.repo_ref} | {proposal.target_file} | "
            f"Score: {evaluation.score}/10 | Safe: {evaluation.is_safe} | "
            f"Verdict: {'APPROVED' if accepted else 'REJECTED'}"
        )

        if accepted:
            self._stats["approvals"] += 1
        else:
            self._stats["rejections"] += 1
            await self._record_rejection(proposal, evaluation)

        return evaluation

    async def _record_rejection(self, proposal: Proposal, evaluation: Evaluation) -> None:
        await self._cortex.add_memory(
            f"REJECTED PROPOSAL for {proposal.repo_ref} (score {evaluation.score}/10, "
            f"safe={evaluation.is_safe}).\n"
            f"Target: {proposal.target_file}\n"
            f"Proposed: {proposal.description}\n"
            f"Reviewer: {evaluation.reasoning}",
            MemoryType.NEGATIVE,
            proposal.repo_ref,
            metadata={
                "cycle_id": proposal.cycle_id,
                "score": evaluation.score,
                "target_file": proposal.target_file,
                "source": "gatekeeper",
            },
        )

    def get_status(self) -> dict:
        return {"accept_score": self.accept_score, "stats": dict(self._stats)}
