"""
Storage and search collaborators consumed by the pipeline.

Each collaborator is a typing.Protocol; the orchestrator only ever talks to
these interfaces. The in-memory implementations back the local service and
the tests. Their similarity search is plain term overlap, not vector math.
"""

import re
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from src.agents.metrics import tier_at_least
from src.agents.research import CacheHit, ResearchCache
from src.agents.state import (
    AnalysisOutput,
    DecompositionOutput,
    Evidence,
    PipelineError,
    PipelineStatus,
    PipelineStatusRecord,
    ProgressOutput,
    ResearchOutput,
    SimilarAnalysis,
    TokenUsage,
    ValidatorOutcome,
    now_ms,
)
from src.agents.usage import UsageRecorder


_WORD = re.compile(r"[a-z0-9]+")


# ============================================================================
# Interfaces
# ============================================================================

class StatusStore(Protocol):
    """Holds the advisory status record of each session run."""

    def upsert_status(
        self,
        session_id: str,
        status: PipelineStatus,
        current_agent: Optional[str] = None,
        revision_count: Optional[int] = None,
        error: Optional[PipelineError] = None,
    ) -> None:
        ...

    def get_status(self, session_id: str) -> Optional[PipelineStatusRecord]:
        ...


class ResultStore(Protocol):
    """Persists phase outputs once a run has produced them."""

    def upsert_results(
        self,
        session_id: str,
        decomposition: DecompositionOutput,
        research: ResearchOutput,
        analysis: AnalysisOutput,
        validation: ValidatorOutcome,
        total_cost: float,
    ) -> None:
        ...

    def upsert_progress(self, patient_id: str, progress: ProgressOutput,
                        session_ids: list[str]) -> None:
        ...


class VectorStore(Protocol):
    """Searchable store of analysis summaries."""

    def search_similar(
        self,
        patient_id: str,
        query_text: str,
        limit: int,
        exclude_session_id: Optional[str] = None,
    ) -> list[SimilarAnalysis]:
        ...

    def save_embedding(
        self,
        session_id: str,
        patient_id: Optional[str],
        kind: str,
        summary_text: str,
        key_findings: list[str],
        metadata: dict[str, Any],
    ) -> None:
        ...


# ============================================================================
# In-memory implementations
# ============================================================================

def _terms(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


def _overlap(query: str, text: str) -> float:
    """Share of query terms that appear in text, in [0, 1]."""
    query_terms = _terms(query)
    if not query_terms:
        return 0.0
    return len(query_terms & _terms(text)) / len(query_terms)


class InMemoryStatusStore:
    def __init__(self):
        self._records: dict[str, PipelineStatusRecord] = {}
        self._lock = threading.Lock()

    def upsert_status(self, session_id, status, current_agent=None, revision_count=None, error=None):
        with self._lock:
            record = self._records.get(session_id) or PipelineStatusRecord(session_id=session_id)
            update = {"status": status, "current_agent": current_agent, "updated_at": now_ms()}
            if revision_count is not None:
                update["revision_count"] = revision_count
            if status == PipelineStatus.ERROR:
                update["error"] = error
            elif status == PipelineStatus.PENDING:
                update["error"] = None
            self._records[session_id] = record.model_copy(update=update)

    def get_status(self, session_id):
        return self._records.get(session_id)


class InMemoryResultStore:
    def __init__(self):
        self.results: dict[str, dict[str, Any]] = {}
        self.progress: dict[str, dict[str, Any]] = {}

    def upsert_results(self, session_id, decomposition, research, analysis, validation, total_cost):
        self.results[session_id] = {
            "decomposition": decomposition,
            "research": research,
            "analysis": analysis,
            "validation": validation,
            "total_cost": total_cost,
            "updated_at": now_ms(),
        }

    def upsert_progress(self, patient_id, progress, session_ids):
        self.progress[patient_id] = {
            "progress": progress,
            "session_ids": list(session_ids),
            "updated_at": now_ms(),
        }


@dataclass
class _Embedding:
    session_id: str
    patient_id: Optional[str]
    kind: str
    summary_text: str
    key_findings: list[str]
    metadata: dict[str, Any]


class InMemoryVectorStore:
    def __init__(self):
        self.embeddings: list[_Embedding] = []

    def save_embedding(self, session_id, patient_id, kind, summary_text, key_findings, metadata):
        self.embeddings = [
            e for e in self.embeddings if not (e.session_id == session_id and e.kind == kind)
        ]
        self.embeddings.append(_Embedding(
            session_id, patient_id, kind, summary_text, list(key_findings), dict(metadata),
        ))

    def search_similar(self, patient_id, query_text, limit, exclude_session_id=None):
        scored = []
        for e in self.embeddings:
            if e.patient_id != patient_id or e.session_id == exclude_session_id:
                continue
            text = " ".join([e.summary_text, *e.key_findings])
            scored.append(SimilarAnalysis(
                session_id=e.session_id,
                summary_text=e.summary_text,
                key_findings=e.key_findings,
                score=_overlap(query_text, text),
            ))
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored[:limit]


class InMemoryUsageRecorder:
    def __init__(self):
        self.records: list[tuple[str, str, TokenUsage]] = []

    def record_usage(self, session_id, agent_name, usage):
        self.records.append((session_id, agent_name, usage))


class InMemoryResearchCache:
    def __init__(self):
        self.entries: list[Evidence] = []

    def search(self, query, limit, min_tier):
        hits = []
        for i, e in enumerate(self.entries):
            if not tier_at_least(e.tier, min_tier):
                continue
            score = _overlap(query, " ".join([e.citation, *e.findings]))
            if score > 0:
                hits.append(CacheHit(
                    id=str(i), tier=e.tier, citation=e.citation, url=e.url,
                    findings=e.findings, score=score,
                ))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    def save(self, entries):
        known = {e.citation for e in self.entries}
        for entry in entries:
            if entry.citation not in known:
                known.add(entry.citation)
                self.entries.append(entry)


# ============================================================================
# Bundle
# ============================================================================

@dataclass
class Collaborators:
    """Everything the orchestrator needs besides the model client."""
    status_store: StatusStore = field(default_factory=InMemoryStatusStore)
    result_store: ResultStore = field(default_factory=InMemoryResultStore)
    vector_store: Optional[VectorStore] = field(default_factory=InMemoryVectorStore)
    usage_recorder: Optional[UsageRecorder] = field(default_factory=InMemoryUsageRecorder)
    research_cache: Optional[ResearchCache] = field(default_factory=InMemoryResearchCache)
