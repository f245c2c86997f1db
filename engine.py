"""
MOMENTUM ENGINE v0.1
====================
Orquestador de ciclos: plan (pulso + investigación + evaluación) y
execute (issue en el tracker + memoria del resultado).

Es el único dueño de las mutaciones de RepositoryRecord.
"""

import asyncio
import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional

from cortex import Cortex, MemoryType
from gatekeeper import Evaluation, Gatekeeper, Proposal
from pulse import PulseCheckError, PulseChecker, normalize_repo_ref
from researcher import ResearchStatus, Researcher
from router import EVALUATOR_MODEL, RESEARCH_MODEL, GeminiProvider
from scout import GitHubAPIError, ScoutAgent
from storage import MomentumStore, StorageError
from tools import ContextGatherer

logger = logging.getLogger("momentum.engine")

DEFAULT_PATROL_CONCURRENCY = 3

# ciclo en curso para los logs; "-" fuera de un ciclo
current_cycle: ContextVar[str] = ContextVar("momentum_cycle", default="-")


# ═══════════════════════════════════════════════════════════════════════════════
# CONTEXTO DE CICLO
# ═══════════════════════════════════════════════════════════════════════════════

@contextmanager
def cycle_context(cycle_id: str) -> Iterator[str]:
    """Asocia los logs emitidos dentro del bloque (y sus tareas hijas) al ciclo."""
    token = current_cycle.set(cycle_id)
    try:
        yield cycle_id
    finally:
        current_cycle.reset(token)


@contextmanager
def phase(name: str) -> Iterator[None]:
    """Mide una fase del ciclo y la registra al terminar, con o sin error."""
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.info(f"[Trace] {name} finished in {time.perf_counter() - start:.2f}s")


# ═══════════════════════════════════════════════════════════════════════════════
# ESTRUCTURAS DE DATOS
# ═══════════════════════════════════════════════════════════════════════════════

class CycleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    STAGNANT_PLANNING = "STAGNANT_PLANNING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class ProposalStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class ProposalStateError(Exception):
    """La propuesta ya fue resuelta (aprobada o rechazada)."""

    def __init__(self, cycle_id: str, status: "ProposalStatus"):
        super().__init__(f"Proposal {cycle_id} is already {status.value}")
        self.cycle_id = cycle_id
        self.status = status


@dataclass
class RepositoryRecord:
    """Estado persistido de un repositorio vigilado."""

    repo_ref: str
    status: CycleStatus
    days_since: float = 0.0
    active_proposal: Optional[Proposal] = None
    last_evaluation: Optional[Evaluation] = None
    unblocks: int = 0
    issue_url: Optional[str] = None
    cycle_id: Optional[str] = None
    error: Optional[str] = None
    last_pulse_at: Optional[str] = None
    updated_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "RepositoryRecord":
        proposal = data.get("active_proposal")
        evaluation = data.get("last_evaluation")
        return cls(
            repo_ref=data["repo_ref"],
            status=CycleStatus(data.get("status", CycleStatus.ACTIVE.value)),
            days_since=float(data.get("days_since") or 0.0),
            active_proposal=Proposal.from_dict(proposal) if proposal else None,
            last_evaluation=Evaluation.from_dict(evaluation) if evaluation else None,
            unblocks=int(data.get("unblocks") or 0),
            issue_url=data.get("issue_url"),
            cycle_id=data.get("cycle_id"),
            error=data.get("error"),
            last_pulse_at=data.get("last_pulse_at"),
            updated_at=data.get("updated_at"),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "repo_ref": self.repo_ref,
            "status": self.status.value,
            "days_since": self.days_since,
            "active_proposal": self.active_proposal.to_dict() if self.active_proposal else None,
            "last_evaluation": self.last_evaluation.to_dict() if self.last_evaluation else None,
            "unblocks": self.unblocks,
            "issue_url": self.issue_url,
            "cycle_id": self.cycle_id,
            "error": self.error,
            "last_pulse_at": self.last_pulse_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
        }


@dataclass
class CycleResult:
    """Resultado visible de plan/execute. Siempre uno de los cuatro estados."""

    status: CycleStatus
    repo_ref: str
    cycle_id: Optional[str] = None
    days_since: Optional[float] = None
    proposal: Optional[Proposal] = None
    evaluation: Optional[Evaluation] = None
    issue_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_stagnant(self) -> bool:
        return self.status in (CycleStatus.STAGNANT_PLANNING, CycleStatus.COMPLETE)

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {"status": self.status.value, "repo_ref": self.repo_ref}
        if self.cycle_id:
            result["cycle_id"] = self.cycle_id
        if self.days_since is not None:
            result["days_since"] = round(self.days_since, 2)
        if self.proposal:
            result["proposal"] = self.proposal.to_dict()
        if self.evaluation:
            result["evaluation"] = self.evaluation.to_dict()
        if self.issue_url:
            result["issue_url"] = self.issue_url
        if self.error:
            result["error"] = self.error
        return result


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

class MomentumEngine:
    """Compone pulso, investigación, evaluación y memoria en ciclos."""

    def __init__(
        self,
        store: MomentumStore,
        scout: ScoutAgent,
        pulse: PulseChecker,
        cortex: Cortex,
        researcher: Researcher,
        recall_k: int = 3,
    ):
        self.store = store
        self.scout = scout
        self.pulse = pulse
        self.cortex = cortex
        self.researcher = researcher
        self.recall_k = recall_k

    @classmethod
    def from_env(cls) -> "MomentumEngine":
        """Construye el grafo completo de dependencias desde la configuración."""
        store = MomentumStore()
        scout = ScoutAgent()
        research_model = GeminiProvider(model=RESEARCH_MODEL)
        evaluator_model = GeminiProvider(model=EVALUATOR_MODEL)
        cortex = Cortex(store, embedder=research_model)
        gatekeeper = Gatekeeper(evaluator_model, cortex)
        researcher = Researcher(
            research_model,
            gatekeeper,
            ContextGatherer(scout),
            scout=scout,
        )
        return cls(store, scout, PulseChecker(scout), cortex, researcher)

    def _persist(self, repo_ref: str, changes: dict) -> None:
        """Merge-write del RepositoryRecord; un fallo aquí no oculta el resultado."""
        try:
            self.store.upsert_repository(repo_ref, changes)
        except StorageError as e:
            logger.error(f"No se pudo persistir {repo_ref}: {e}")

    def _fail(self, repo_ref: str, error: str, cycle_id: Optional[str] = None,
              days_since: Optional[float] = None, changes: Optional[dict] = None) -> CycleResult:
        self._persist(repo_ref, {
            **(changes or {}),
            "status": CycleStatus.FAILED.value,
            "error": error,
            "cycle_id": cycle_id,
        })
        return CycleResult(
            status=CycleStatus.FAILED,
            repo_ref=repo_ref,
            cycle_id=cycle_id,
            days_since=days_since,
            error=error,
        )

    # ───────────────────────────────────────────────────────────────────────────
    # PLAN
    # ───────────────────────────────────────────────────────────────────────────

    async def plan(
        self,
        repo_ref: str,
        metadata: Optional[Dict[str, Any]] = None,
        research: bool = True,
    ) -> CycleResult:
        """
        Fase 1: chequea el pulso y, si el repositorio está estancado,
        investiga hasta obtener una propuesta aprobada por el Gatekeeper.

        Con `research=False` (mantenimiento) solo se refresca el pulso: un
        repositorio estancado queda en STAGNANT_PLANNING sin propuesta y el
        modelo no se invoca.
        """
        with cycle_context(uuid.uuid4().hex) as cycle_id:
            return await self._plan(cycle_id, repo_ref, metadata, research)

    async def _plan(
        self,
        cycle_id: str,
        repo_ref: str,
        metadata: Optional[Dict[str, Any]],
        research: bool,
    ) -> CycleResult:
        try:
            with phase("pulse"):
                pulse = await self.pulse.check(repo_ref)
        except PulseCheckError as e:
            logger.error(f"[Core] Pulse check failed for {repo_ref}: {e}")
            return CycleResult(
                status=CycleStatus.FAILED,
                repo_ref=repo_ref.strip(),
                cycle_id=cycle_id,
                error=str(e),
            )

        ref = pulse.repo_ref
        base_changes: Dict[str, Any] = {
            "days_since": pulse.days_since,
            "last_pulse_at": pulse.last_activity.isoformat(),
            "cycle_id": cycle_id,
        }
        if metadata:
            existing = self._existing_metadata(ref)
            base_changes["metadata"] = {**existing, **metadata}

        if not pulse.is_stagnant:
            self._persist(ref, {**base_changes, "status": CycleStatus.ACTIVE.value, "error": None})
            return CycleResult(
                status=CycleStatus.ACTIVE,
                repo_ref=ref,
                cycle_id=cycle_id,
                days_since=pulse.days_since,
            )

        if not research:
            logger.info(f"[Core] Stagnation detected ({pulse.days_since:.1f} days) on {ref}; maintenance only")
            self._persist(ref, {**base_changes, "status": CycleStatus.STAGNANT_PLANNING.value, "error": None})
            return CycleResult(
                status=CycleStatus.STAGNANT_PLANNING,
                repo_ref=ref,
                cycle_id=cycle_id,
                days_since=pulse.days_since,
            )

        logger.info(f"[Core] Stagnation detected ({pulse.days_since:.1f} days). Researching {ref}...")

        try:
            with phase("recall"):
                memories = await self.cortex.search(
                    f"Lessons for unblocking {ref}: past proposals, rejections and successes",
                    k=self.recall_k,
                    repo_ref=ref,
                )
            with phase("research"):
                outcome = await self.researcher.run(
                    ref,
                    pulse.days_since,
                    memories,
                    cycle_id,
                    is_remote=pulse.is_remote,
                )
        except Exception as e:
            logger.exception(f"[Core Error] plan failed for {ref}")
            return self._fail(ref, f"{type(e).__name__}: {e}", cycle_id, pulse.days_since, base_changes)

        if outcome.status != ResearchStatus.DONE:
            error = outcome.error or f"Research ended with {outcome.status.value}"
            return self._fail(ref, f"[{outcome.status.value}] {error}", cycle_id, pulse.days_since, base_changes)

        self._persist(ref, {
            **base_changes,
            "status": CycleStatus.STAGNANT_PLANNING.value,
            "active_proposal": outcome.proposal.to_dict(),
            "last_evaluation": outcome.evaluation.to_dict(),
            "error": None,
        })
        try:
            self.store.append_proposal(
                cycle_id,
                ref,
                outcome.proposal.to_dict(),
                outcome.evaluation.to_dict(),
                status=ProposalStatus.PENDING.value,
            )
        except StorageError as e:
            logger.error(f"No se pudo registrar la propuesta {cycle_id}: {e}")

        return CycleResult(
            status=CycleStatus.STAGNANT_PLANNING,
            repo_ref=ref,
            cycle_id=cycle_id,
            days_since=pulse.days_since,
            proposal=outcome.proposal,
            evaluation=outcome.evaluation,
        )

    def _existing_metadata(self, ref: str) -> dict:
        try:
            current = self.store.get_repository(ref) or {}
        except StorageError:
            return {}
        return dict(current.get("metadata") or {})

    # ───────────────────────────────────────────────────────────────────────────
    # EXECUTE / REJECT
    # ───────────────────────────────────────────────────────────────────────────

    def _require_pending(self, proposal: Proposal) -> None:
        """
        Raises:
            ProposalStateError: si el historial ya la registra como resuelta
        """
        status = self.proposal_status(proposal.cycle_id)
        if status is not None and status != ProposalStatus.PENDING:
            raise ProposalStateError(proposal.cycle_id, status)

    async def execute(self, proposal: Proposal) -> CycleResult:
        """
        Fase 2: crea el issue en el tracker (una sola vez, sin reintentos)
        y registra el resultado.

        Raises:
            ProposalStateError: si la propuesta ya fue aprobada o rechazada
            StorageError: si la memoria positiva no pudo guardarse
        """
        self._require_pending(proposal)

        with cycle_context(proposal.cycle_id):
            ref = proposal.repo_ref
            logger.info(f"[Core] Executing proposal {proposal.cycle_id[:8]} on {ref}...")

            try:
                with phase("create_issue"):
                    issue_url = await self.scout.create_issue(ref, proposal.title, proposal.body)
            except GitHubAPIError as e:
                logger.error(f"[Core Error] execute failed for {ref}: {e}")
                return self._fail(ref, str(e), proposal.cycle_id)

            if not issue_url:
                logger.warning(f"[Core] Issue filed on {ref} but the tracker returned no URL")

            current = self._current_record(ref)
            self._persist(ref, {
                "status": CycleStatus.COMPLETE.value,
                "issue_url": issue_url or None,
                "unblocks": (current.unblocks if current else 0) + 1,
                "active_proposal": None,
                "cycle_id": proposal.cycle_id,
                "error": None,
            })
            try:
                self.store.update_proposal_status(proposal.cycle_id, ProposalStatus.ACCEPTED.value)
            except StorageError as e:
                logger.error(f"No se pudo marcar la propuesta {proposal.cycle_id} como ACCEPTED: {e}")

            await self.cortex.add_memory(
                f"RESOLVED STAGNATION in {ref}: filed '{proposal.title}' targeting "
                f"{proposal.target_file}.\nChange: {proposal.description}\nIssue: {issue_url or 'unknown'}",
                MemoryType.POSITIVE,
                ref,
                metadata={"cycle_id": proposal.cycle_id, "issue_url": issue_url, "source": "execute"},
            )

            return CycleResult(
                status=CycleStatus.COMPLETE,
                repo_ref=ref,
                cycle_id=proposal.cycle_id,
                issue_url=issue_url or None,
            )

    async def reject(self, proposal: Proposal, reason: Optional[str] = None) -> None:
        """
        Rechazo humano: memoria negativa + historial REJECTED. No toca el status.

        Raises:
            ProposalStateError: si la propuesta ya fue aprobada o rechazada
        """
        self._require_pending(proposal)

        with cycle_context(proposal.cycle_id):
            await self.cortex.add_memory(
                f"HUMAN REJECTION: User rejected proposal for {proposal.repo_ref}.\n"
                f"Reason: {reason or 'Manual intervention.'}\n"
                f"Proposed Change: {proposal.description}",
                MemoryType.NEGATIVE,
                proposal.repo_ref,
                metadata={"cycle_id": proposal.cycle_id, "source": "human"},
            )
            try:
                self.store.update_proposal_status(proposal.cycle_id, ProposalStatus.REJECTED.value)
            except StorageError as e:
                logger.error(f"No se pudo marcar la propuesta {proposal.cycle_id} como REJECTED: {e}")
            logger.info(f"[Core] Learning from human rejection: {proposal.repo_ref}")

    def load_proposal(self, cycle_id: str) -> Optional[Proposal]:
        """Recupera una propuesta del historial para cruzar la frontera plan → execute."""
        try:
            entry = self.store.get_proposal(cycle_id)
        except StorageError as e:
            logger.warning(f"Lectura de propuesta {cycle_id} falló: {e}")
            return None
        return Proposal.from_dict(entry["proposal"]) if entry else None

    def proposal_status(self, cycle_id: str) -> Optional[ProposalStatus]:
        try:
            entry = self.store.get_proposal(cycle_id)
        except StorageError:
            return None
        return ProposalStatus(entry["status"]) if entry else None

    # ───────────────────────────────────────────────────────────────────────────
    # TRACKING
    # ───────────────────────────────────────────────────────────────────────────

    def _current_record(self, ref: str) -> Optional[RepositoryRecord]:
        try:
            data = self.store.get_repository(ref)
        except StorageError:
            return None
        return RepositoryRecord.from_dict(data) if data else None

    def list_repos(self) -> List[RepositoryRecord]:
        try:
            return [RepositoryRecord.from_dict(d) for d in self.store.list_repositories()]
        except StorageError as e:
            logger.warning(f"listRepos degradado a vacío: {e}")
            return []

    def untrack(self, repo_ref: str) -> dict:
        try:
            ref = normalize_repo_ref(repo_ref)
        except PulseCheckError as e:
            return {"success": False, "error": str(e)}

        try:
            removed = self.store.delete_repository(ref)
        except StorageError as e:
            return {"success": False, "error": str(e)}

        if not removed:
            return {"success": False, "error": f"Repository {ref} is not tracked"}

        logger.info(f"[Core] Untracked {ref}")
        return {"success": True}

    async def patrol(
        self,
        concurrency: int = DEFAULT_PATROL_CONCURRENCY,
        maintenance_only: bool = False,
    ) -> List[CycleResult]:
        """
        Ejecuta plan sobre todos los repositorios vigilados, en paralelo acotado.

        `maintenance_only` refresca días de inactividad y estado sin investigar.
        """
        records = self.list_repos()
        mode = "maintenance" if maintenance_only else "full"
        logger.info(f"[Patrol] Found {len(records)} tracked repositories ({mode})")
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run_one(record: RepositoryRecord) -> CycleResult:
            async with semaphore:
                return await self.plan(record.repo_ref, research=not maintenance_only)

        results = await asyncio.gather(
            *(run_one(record) for record in records),
            return_exceptions=True,
        )

        final_results = []
        for record, result in zip(records, results):
            if isinstance(result, Exception):
                logger.error(f"[Patrol] Cycle crashed for {record.repo_ref}: {result}")
                final_results.append(CycleResult(
                    status=CycleStatus.FAILED,
                    repo_ref=record.repo_ref,
                    error=f"{type(result).__name__}: {result}",
                ))
            else:
                final_results.append(result)

        stagnant = sum(1 for r in final_results if r.status == CycleStatus.STAGNANT_PLANNING)
        failed = sum(1 for r in final_results if r.status == CycleStatus.FAILED)
        logger.info(f"[Patrol] Complete: {stagnant} stagnant, {failed} failures")
        return final_results


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_engine_instance: Optional[MomentumEngine] = None
_engine_lock = Lock()


def get_engine() -> MomentumEngine:
    """Obtiene la instancia singleton del engine."""
    global _engine_instance
    with _engine_lock:
        if _engine_instance is None:
            _engine_instance = MomentumEngine.from_env()
        return _engine_instance
