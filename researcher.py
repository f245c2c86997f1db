"""
MOMENTUM RESEARCHER v0.1
========================
Bucle de investigación con herramientas: propone → critica → aprueba/reintenta.

Estados por ciclo:
    START → RESEARCHING ⇄ (listFiles/getFile)
          → EVALUATING → DONE | RESEARCHING (rechazo)
    Terminales: DONE, FINISHED_EMPTY, BUDGET_EXCEEDED, FAILED
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

from cortex import Memory, format_memories
from gatekeeper import Evaluation, Gatekeeper, Proposal
from pulse import parse_repo_ref
from router import (
    BaseProvider,
    FunctionCall,
    ModelTurn,
    ProviderError,
    function_responses_message,
    user_message,
)
from scout import ScoutAgent
from tools import (
    PROPOSE_CHANGE,
    TOOL_DECLARATIONS,
    ContextGatherer,
    ProposeChange,
    ToolDispatchError,
    decode_tool_call,
)

# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURACIÓN
# ═══════════════════════════════════════════════════════════════════════════════

load_dotenv(Path.cwd() / ".env")

MAX_RESEARCH_TURNS = int(os.getenv("MAX_RESEARCH_TURNS", "25"))
TURN_TIMEOUT_SECONDS = float(os.getenv("TURN_TIMEOUT_SECONDS", "60"))
README_EXCERPT_CHARS = 3000

SKIPPED_WHILE_PROPOSING = "SKIPPED: a proposal was submitted in the same turn; it is being reviewed."
SKIPPED_EXTRA_PROPOSAL = "SKIPPED: only one proposal is reviewed per turn."

logger = logging.getLogger("momentum.researcher")


RESEARCHER_SYSTEM = """You are Momentum, a shadow developer agent. Your sole purpose is to unblock stagnant repositories.

Work with tools only:
- listFiles / getFile to inspect the repository when you need facts
- proposeChange exactly when you have ONE concrete, small, safe improvement

A reviewer scores every proposal. If it is rejected you will receive the
reviewer's reasoning: address it and propose again. Learn from past lessons.
DO NOT TALK. ONLY CALL TOOLS."""


# ═══════════════════════════════════════════════════════════════════════════════
# ESTRUCTURAS DE DATOS
# ═══════════════════════════════════════════════════════════════════════════════

class ResearchStatus(str, Enum):
    DONE = "DONE"
    FINISHED_EMPTY = "FINISHED_EMPTY"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    FAILED = "FAILED"


class BudgetExceededError(Exception):
    """Se agotó el límite de turnos o un turno excedió su timeout."""
    pass


@dataclass(frozen=True)
class PromptAssembly:
    """Prompt inmutable de un ciclo: instrucciones + memorias + contexto."""

    repo_ref: str
    days_since: float
    readme: str = ""
    memories: tuple = ()
    system_instruction: str = RESEARCHER_SYSTEM

    def initial_message(self) -> str:
        readme = self.readme[:README_EXCERPT_CHARS] if self.readme else "(no readme available)"
        return (
            f"Repository {self.repo_ref} is stagnant: no activity for {self.days_since:.1f} days.\n\n"
            f"## README excerpt\n{readme}\n\n"
            f"## Past lessons\n{format_memories(self.memories)}\n\n"
            "Investigate if needed, then propose a change now with proposeChange."
        )


@dataclass
class ResearchOutcome:
    """Resultado de un ciclo de investigación."""

    status: ResearchStatus
    turns: int = 0
    proposal: Optional[Proposal] = None
    evaluation: Optional[Evaluation] = None
    evaluations: List[Evaluation] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ResearchStatus.DONE


# ═══════════════════════════════════════════════════════════════════════════════
# RESEARCHER
# ═══════════════════════════════════════════════════════════════════════════════

class Researcher:
    """Conduce la conversación con el modelo hasta una propuesta aceptada."""

    def __init__(
        self,
        provider: BaseProvider,
        gatekeeper: Gatekeeper,
        gatherer: ContextGatherer,
        scout: Optional[ScoutAgent] = None,
        max_turns: int = MAX_RESEARCH_TURNS,
        turn_timeout: float = TURN_TIMEOUT_SECONDS,
    ):
        self._provider = provider
        self._gatekeeper = gatekeeper
        self._gatherer = gatherer
        self._scout = scout
        self.max_turns = max_turns
        self.turn_timeout = turn_timeout

    async def load_readme(self, repo_ref: str, is_remote: bool) -> str:
        """README del repositorio; "" si no se puede obtener."""
        if is_remote:
            if self._scout is None:
                return ""
            result = await self._scout.get_readme(repo_ref)
            if not result.success:
                logger.warning(f"README no disponible para {repo_ref}: {result.error}")
                return ""
            return result.data or ""

        for name in ("README.md", "README.rst", "README.txt", "README"):
            path = Path(repo_ref) / name
            if path.is_file():
                try:
                    return path.read_text(encoding="utf-8", errors="ignore")
                except OSError as e:
                    logger.warning(f"README ilegible en {path}: {e}")
                    return ""
        return ""

    async def assemble_prompt(
        self,
        repo_ref: str,
        days_since: float,
        memories: Sequence[Memory] = (),
        is_remote: bool = True,
    ) -> PromptAssembly:
        return PromptAssembly(
            repo_ref=repo_ref,
            days_since=days_since,
            readme=await self.load_readme(repo_ref, is_remote),
            memories=tuple(memories),
        )

    async def _next_turn(self, prompt: PromptAssembly, history: list) -> ModelTurn:
        try:
            return await asyncio.wait_for(
                self._provider.generate(
                    history,
                    system_instruction=prompt.system_instruction,
                    tools=TOOL_DECLARATIONS,
                ),
                timeout=self.turn_timeout,
            )
        except asyncio.TimeoutError as e:
            raise BudgetExceededError(f"turn timeout after {self.turn_timeout:.0f}s") from e

    async def _answer_context_call(
        self,
        fc: FunctionCall,
        repo_ref: str,
        is_remote: bool,
        cycle_id: str,
    ) -> str:
        """Ejecuta listFiles/getFile; los errores vuelven al modelo como texto."""
        try:
            call = decode_tool_call(fc.name, fc.args)
            if isinstance(call, ProposeChange):
                raise ToolDispatchError(f"{fc.name} cannot be dispatched as a context tool")
        except ToolDispatchError as e:
            logger.warning(f"[{cycle_id[:8]}] Invalid tool call: {e}")
            return f"ERROR: {e}"

        logger.debug(f"[{cycle_id[:8]}] Tool {fc.name}: {call}")
        return await self._gatherer.dispatch(call, repo_ref, is_remote)

    async def run(
        self,
        repo_ref: str,
        days_since: float,
        memories: Sequence[Memory],
        cycle_id: str,
        is_remote: Optional[bool] = None,
    ) -> ResearchOutcome:
        """
        Ejecuta el bucle completo.

        Errores del proveedor no se reintentan aquí (terminan en FAILED).
        StorageError al registrar un rechazo se propaga al orquestador.
        """
        if is_remote is None:
            is_remote = parse_repo_ref(repo_ref).is_remote

        prompt = await self.assemble_prompt(repo_ref, days_since, memories, is_remote)
        history = [user_message(prompt.initial_message())]
        evaluations: List[Evaluation] = []
        turns = 0

        logger.info(f"[{cycle_id[:8]}] Research started for {repo_ref} ({len(prompt.memories)} lessons)")

        try:
            while True:
                if turns >= self.max_turns:
                    raise BudgetExceededError(f"iteration cap of {self.max_turns} turns reached")

                turns += 1
                turn = await self._next_turn(prompt, history)
                history.append(turn.content or {"role": "model", "parts": [{"text": turn.text}]})

                if not turn.has_function_call:
                    logger.warning(f"[{cycle_id[:8]}] Model finished without proposal (turn {turns})")
                    return ResearchOutcome(
                        status=ResearchStatus.FINISHED_EMPTY,
                        turns=turns,
                        evaluations=evaluations,
                        error="No proposal produced: model answered without calling a tool",
                    )

                # una respuesta por llamada, en el mismo orden
                proposing = any(fc.name == PROPOSE_CHANGE for fc in turn.function_calls)
                results = []
                reviewed = False

                for fc in turn.function_calls:
                    if fc.name != PROPOSE_CHANGE:
                        if proposing:
                            results.append((fc.name, SKIPPED_WHILE_PROPOSING))
                        else:
                            results.append((fc.name, await self._answer_context_call(fc, repo_ref, is_remote, cycle_id)))
                        continue

                    if reviewed:
                        results.append((fc.name, SKIPPED_EXTRA_PROPOSAL))
                        continue
                    reviewed = True

                    try:
                        call = decode_tool_call(fc.name, fc.args)
                    except ToolDispatchError as e:
                        logger.warning(f"[{cycle_id[:8]}] Invalid proposal: {e}")
                        results.append((fc.name, f"ERROR: {e}"))
                        continue

                    proposal = Proposal(
                        repo_ref=repo_ref,
                        target_file=call.target_file,
                        description=call.description,
                        code_change=call.code_change,
                        cycle_id=cycle_id,
                    )
                    evaluation = await self._gatekeeper.evaluate(proposal, prompt.readme)
                    evaluations.append(evaluation)

                    if self._gatekeeper.is_accepted(evaluation):
                        logger.info(f"[{cycle_id[:8]}] Proposal accepted after {turns} turns")
                        return ResearchOutcome(
                            status=ResearchStatus.DONE,
                            turns=turns,
                            proposal=proposal,
                            evaluation=evaluation,
                            evaluations=evaluations,
                        )

                    results.append((
                        fc.name,
                        f"REJECTED by reviewer (score {evaluation.score}/10, safe={evaluation.is_safe}): "
                        f"{evaluation.reasoning}\nAddress this feedback and propose a better change.",
                    ))

                history.append(function_responses_message(results))

        except BudgetExceededError as e:
            logger.error(f"[{cycle_id[:8]}] Research budget exceeded for {repo_ref}: {e}")
            return ResearchOutcome(
                status=ResearchStatus.BUDGET_EXCEEDED,
                turns=turns,
                evaluations=evaluations,
                error=f"Budget exceeded: {e}",
            )
        except ProviderError as e:
            logger.error(f"[{cycle_id[:8]}] Provider error during research for {repo_ref}: {e}")
            return ResearchOutcome(
                status=ResearchStatus.FAILED,
                turns=turns,
                evaluations=evaluations,
                error=f"Provider error: {e}",
            )
