#!/usr/bin/env python3
"""
Threadscape Process Metrics (v1.0.0)

Measures documented design-process graphs. Every project of a corpus is a
directed graph of dated exploring/making nodes; this module turns each one
into a flat, immutable metrics record and reduces the whole corpus into
cohort statistics that reports and charts can consume.

Pipeline per project:
- Document loading (tolerant of absent/malformed optional fields)
- Area normalization and macro-category derivation
- Structural analysis (degrees, density, reciprocity, hubs, SCC cycles)
- Temporal analysis (weekly interlacing, conversion, feedback, lead time)
- Cross-category analysis (macro-category crossing rates)
- Composition into ProjectMetrics

Corpus level:
- Cohort aggregation (mean/median/min/max, average weekly timeline, flags)
- JSON, CSV and manifest export

Author: Threadscape Team
Version: 1.0.0
"""

import cProfile
import csv
import hashlib
import io
import json
import math
import os
import pstats
import re
import statistics
import sys
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from functools import cached_property
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import click
import psutil
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

colorama_init(autoreset=True)


# Version information
VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

EXPLORING = "exploring"
MAKING = "making"
OTHER = "other"

SPECULATIVE = "speculative"
COMMUNICATION = "communication"
INTERACTION = "interaction"
MIXED = "mixed"
UNKNOWN = "unknown"
MACRO_CATEGORIES = (SPECULATIVE, COMMUNICATION, INTERACTION)

E_TO_M = "e_to_m"
M_TO_E = "m_to_e"

DEFAULT_HUB_THRESHOLD = 4
DEFAULT_MAX_WEEKS = 200
DEFAULT_SPAN_YEARS_WARN = 20
DEFAULT_FUTURE_DAYS_WARN = 14
DEFAULT_PAST_YEAR_WARN = 1990

# Percentage/ratio metrics reduced across the corpus
AGGREGATE_KEYS = (
    "interlacingIndex",
    "overlapIntensity",
    "cycleParticipation",
    "crossInterlacingShare",
    "conversionRate",
    "feedbackRatio",
    "leadtimeMedianDays",
    "crossMacroShare",
    "multiAreaShare",
    "temporalBackShare",
)

CSV_COLUMNS = (
    "project",
    "nodes",
    "edges",
    "exploring",
    "making",
    "interlacingIndex",
    "overlapIntensity",
    "cycleParticipation",
    "crossInterlacingShare",
    "conversionRate",
    "feedbackRatio",
    "leadtimeMedianDays",
    "crossMacroShare",
    "multiAreaShare",
    "temporalBackShare",
    "sources",
    "sinks",
)

PROJECT_DIR_PATTERN = re.compile(r"^\d+_")
PROJECT_FILE_NAME = "project.json"


class DocumentError(ValueError):
    """A project document that cannot be turned into a graph at all."""


# ============================================================================
# AREA NORMALIZATION
# ============================================================================


# Ordered alternative sources for a node's areas; legacy single-value
# property names are folded in after the primary list.
AREA_SOURCE_FIELDS = ("areas", "mainAreas", "mainArea", "mainarea")
LEGACY_AREA_FIELDS = AREA_SOURCE_FIELDS[1:]

_CANONICAL_AREAS = {
    "speculative": "Speculative Design",
    "speculative design": "Speculative Design",
    "communication": "Communication Design",
    "communication design": "Communication Design",
    "interaction": "Interaction Design",
    "interaction design": "Interaction Design",
}

_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class AreaSource:
    """One place a node's areas were recorded under (field name + raw value)."""

    field: str
    value: Any

    @property
    def is_legacy(self) -> bool:
        return self.field in LEGACY_AREA_FIELDS


def canonical_area_name(value: Any) -> str:
    """Collapse whitespace and map the historically renamed labels."""
    text = _WHITESPACE.sub(" ", "" if value is None else str(value)).strip()
    if not text:
        return ""
    return _CANONICAL_AREAS.get(text.lower(), text)


def area_key(name: str) -> str:
    """Deduplication key: lower-cased, non-alphanumeric runs as single spaces."""
    return _NON_ALNUM.sub(" ", name.lower()).strip()


class AreaNormalizer:
    """
    Canonicalize free-text area labels into an ordered, deduplicated list
    and derive the node's macro-category from them.

    Macro-category scoring is substring containment over Italian and
    English stems; the stems and the tie rule are fixed.
    """

    @staticmethod
    def normalize(primary: Any, legacy: Sequence[Any] = ()) -> List[str]:
        """
        Normalize primary areas followed by legacy area values.

        Args:
            primary: a string, a list of strings, or None
            legacy: further values (each a string, list or None) merged after

        Returns:
            Canonical area names, first occurrence wins
        """
        seen = set()
        out = []

        def push(raw: Any):
            mapped = canonical_area_name(raw)
            if not mapped:
                return
            key = area_key(mapped)
            if not key or key in seen:
                return
            seen.add(key)
            out.append(mapped)

        for value in [primary, *legacy]:
            if not value:
                continue
            if isinstance(value, (list, tuple)):
                for item in value:
                    push(item)
            else:
                push(value)
        return out

    @classmethod
    def normalize_sources(cls, sources: Sequence[AreaSource]) -> List[str]:
        """Normalize an ordered list of area sources (primary first)."""
        if not sources:
            return []
        return cls.normalize(sources[0].value, [s.value for s in sources[1:]])

    @staticmethod
    def macro_category(areas: Iterable[str]) -> str:
        """
        Score the three keyword buckets over all areas.

        Returns the strictly highest bucket, MIXED on a tie between nonzero
        buckets, UNKNOWN when nothing matched.
        """
        scores = {SPECULATIVE: 0, COMMUNICATION: 0, INTERACTION: 0}
        for area in areas or ():
            text = str(area or "").lower()
            if not text:
                continue
            if "specul" in text:
                scores[SPECULATIVE] += 1
            if "comunic" in text or "communicat" in text:
                scores[COMMUNICATION] += 1
            if "inter" in text:
                scores[INTERACTION] += 1

        top = max(scores.values())
        if top <= 0:
            return UNKNOWN
        tied = [name for name, score in scores.items() if score == top]
        if len(tied) > 1:
            return MIXED
        return tied[0]


# ============================================================================
# DOCUMENT LOADING
# ============================================================================


_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_date(value: Any) -> Optional[date]:
    """Parse a YYYY-MM-DD calendar date; anything else is None."""
    if not value or not isinstance(value, str):
        return None
    if not _DATE_PATTERN.match(value):
        return None
    try:
        return date(int(value[0:4]), int(value[5:7]), int(value[8:10]))
    except ValueError:
        return None


def normalize_action(value: Any) -> str:
    action = str(value or "").strip().lower()
    if action in (EXPLORING, MAKING):
        return action
    return OTHER


def _as_id(value: Any) -> str:
    return str(value) if value else ""


@dataclass(frozen=True)
class NodeRecord:
    id: str
    action: str = OTHER
    date: Optional[date] = None
    areas: Tuple[str, ...] = ()
    type: str = ""

    @property
    def macro_category(self) -> str:
        return AreaNormalizer.macro_category(self.areas)

    @property
    def is_mode_node(self) -> bool:
        return self.action in (EXPLORING, MAKING)


@dataclass(frozen=True)
class EdgeRecord:
    source: str
    target: str
    dashed: bool = False


@dataclass(frozen=True)
class DataQuality:
    """Recoverable input issues absorbed while loading one document."""

    missing_dates: int = 0
    invalid_dates: int = 0
    missing_actions: int = 0
    action_case_mismatches: int = 0
    missing_node_ids: int = 0
    duplicate_node_ids: int = 0
    dangling_edges: int = 0
    self_loop_edges: int = 0
    duplicate_edges: int = 0
    legacy_area_fields: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "missingDates": self.missing_dates,
            "invalidDates": self.invalid_dates,
            "missingActions": self.missing_actions,
            "actionCaseMismatches": self.action_case_mismatches,
            "missingNodeIds": self.missing_node_ids,
            "duplicateNodeIds": self.duplicate_node_ids,
            "danglingEdges": self.dangling_edges,
            "selfLoopEdges": self.self_loop_edges,
            "duplicateEdges": self.duplicate_edges,
            "legacyAreaFields": self.legacy_area_fields,
        }


@dataclass(frozen=True)
class ProjectGraph:
    """
    Typed in-memory graph of one project.

    Node order is the order of the document and is the canonical
    iteration order for every analyzer. Only valid edges are kept.
    """

    name: str
    nodes: Tuple[NodeRecord, ...]
    edges: Tuple[EdgeRecord, ...]
    quality: DataQuality = field(default_factory=DataQuality)

    @cached_property
    def node_index(self) -> Dict[str, NodeRecord]:
        # Duplicate ids resolve to the last occurrence
        return {node.id: node for node in self.nodes}

    def node(self, node_id: str) -> Optional[NodeRecord]:
        return self.node_index.get(node_id)

    def endpoints(self, edge: EdgeRecord) -> Tuple[NodeRecord, NodeRecord]:
        return self.node_index[edge.source], self.node_index[edge.target]


def collect_area_sources(data: Dict[str, Any]) -> List[AreaSource]:
    """Collect the node's area values in canonical source order."""
    return [
        AreaSource(name, data.get(name))
        for name in AREA_SOURCE_FIELDS
        if data.get(name) is not None
    ]


def load_document(document: Any, name: str = "") -> ProjectGraph:
    """
    Parse a project document into a ProjectGraph.

    Raises DocumentError only when the document is structurally impossible
    (not an object, or nodes/edges not arrays). Everything else is tolerated
    and tallied into DataQuality.
    """
    if not isinstance(document, dict):
        raise DocumentError(f"{name or 'document'}: top level is not an object")
    raw_nodes = document.get("nodes")
    raw_edges = document.get("edges")
    if not isinstance(raw_nodes, list):
        raise DocumentError(f"{name or 'document'}: 'nodes' is not an array")
    if not isinstance(raw_edges, list):
        raise DocumentError(f"{name or 'document'}: 'edges' is not an array")

    tallies = Counter()
    nodes = []
    id_counts = Counter()

    for raw in raw_nodes:
        raw = raw if isinstance(raw, dict) else {}
        data = raw.get("data")
        data = data if isinstance(data, dict) else {}

        node_id = _as_id(raw.get("id"))
        if node_id:
            id_counts[node_id] += 1
        else:
            tallies["missing_node_ids"] += 1

        raw_action = data.get("action")
        if not str(raw_action or "").strip():
            tallies["missing_actions"] += 1
        elif isinstance(raw_action, str) and raw_action != raw_action.lower():
            tallies["action_case_mismatches"] += 1

        raw_date = data.get("date")
        node_date = parse_date(raw_date)
        if not raw_date:
            tallies["missing_dates"] += 1
        elif node_date is None:
            tallies["invalid_dates"] += 1

        sources = collect_area_sources(data)
        if any(source.is_legacy for source in sources):
            tallies["legacy_area_fields"] += 1

        nodes.append(
            NodeRecord(
                id=node_id,
                action=normalize_action(raw_action),
                date=node_date,
                areas=tuple(AreaNormalizer.normalize_sources(sources)),
                type=str(data.get("type") or "").strip(),
            )
        )

    known_ids = set(id_counts)
    edges = []
    edge_keys = set()

    for raw in raw_edges:
        raw = raw if isinstance(raw, dict) else {}
        source = _as_id(raw.get("s"))
        target = _as_id(raw.get("t"))
        dashed = bool(raw.get("dashed"))

        key = (source, target, dashed)
        if key in edge_keys:
            tallies["duplicate_edges"] += 1
        else:
            edge_keys.add(key)

        dangling = (
            not source or not target or source not in known_ids or target not in known_ids
        )
        if dangling:
            tallies["dangling_edges"] += 1
        if source and source == target:
            tallies["self_loop_edges"] += 1
        if dangling or source == target:
            continue
        edges.append(EdgeRecord(source, target, dashed))

    tallies["duplicate_node_ids"] = sum(1 for count in id_counts.values() if count > 1)

    return ProjectGraph(
        name=name,
        nodes=tuple(nodes),
        edges=tuple(edges),
        quality=DataQuality(**tallies),
    )


def load_project_file(path: str, name: Optional[str] = None) -> ProjectGraph:
    """Read a project.json file and load it; I/O and JSON errors become DocumentError."""
    if name is None:
        parent = Path(path).parent.name
        name = parent if Path(path).name == PROJECT_FILE_NAME else Path(path).stem
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
    except (OSError, UnicodeDecodeError) as e:
        raise DocumentError(f"{name}: cannot read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise DocumentError(f"{name}: JSON parse failed: {e}") from e
    return load_document(document, name)


@dataclass(frozen=True)
class ProjectSource:
    name: str
    path: str


def discover_projects(corpus_path: str) -> List[ProjectSource]:
    """
    Find project documents under a corpus directory.

    A corpus holds numbered folders (``01_name``) each with a project.json;
    they are returned in name order. A path to a single JSON file is a
    one-project corpus.
    """
    if os.path.isfile(corpus_path):
        stem = Path(corpus_path).stem
        if Path(corpus_path).name == PROJECT_FILE_NAME:
            stem = Path(corpus_path).resolve().parent.name
        return [ProjectSource(stem, corpus_path)]

    with os.scandir(corpus_path) as it:
        entries = sorted(it, key=lambda e: e.name)

    sources = []
    for entry in entries:
        if not entry.is_dir() or not PROJECT_DIR_PATTERN.match(entry.name):
            continue
        project_file = os.path.join(entry.path, PROJECT_FILE_NAME)
        if os.path.exists(project_file):
            sources.append(ProjectSource(entry.name, project_file))
    return sources


# ============================================================================
# STRUCTURAL ANALYSIS
# ============================================================================


@dataclass(frozen=True)
class StructuralMetrics:
    in_degree: Dict[str, int]
    out_degree: Dict[str, int]
    density: float
    reciprocity_pairs: int
    convergent: int
    divergent: int
    sources: int
    sinks: int
    components: Tuple[Tuple[str, ...], ...]
    cyclic_nodes: frozenset
    scc_count: int
    largest_scc: int
    cycle_participation: float


def strongly_connected_components(
    node_ids: Sequence[str], adjacency: Dict[str, List[str]]
) -> List[Tuple[str, ...]]:
    """
    Tarjan's algorithm with an explicit work stack.

    Roots are tried in the given order and successors in adjacency order,
    so components come out in the same order as the recursive formulation.
    All bookkeeping is local to this call.

    Returns:
        Every component (singletons included) as a tuple of node ids
    """
    index_of: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack = set()
    stack: List[str] = []
    components: List[Tuple[str, ...]] = []
    counter = 0

    for root in node_ids:
        if root in index_of:
            continue

        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(adjacency.get(root, ())))]

        while work:
            v, successors = work[-1]
            descended = False
            for w in successors:
                if w not in index_of:
                    index_of[w] = lowlink[w] = counter
                    counter += 1
                    stack.append(w)
                    on_stack.add(w)
                    work.append((w, iter(adjacency.get(w, ()))))
                    descended = True
                    break
                if w in on_stack:
                    lowlink[v] = min(lowlink[v], index_of[w])
            if descended:
                continue

            work.pop()
            if lowlink[v] == index_of[v]:
                component = []
                while stack:
                    w = stack.pop()
                    on_stack.discard(w)
                    component.append(w)
                    if w == v:
                        break
                components.append(tuple(component))
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[v])

    return components


class StructuralAnalyzer:
    """Degree, density, reciprocity, hub and cycle metrics over valid edges."""

    def __init__(self, hub_threshold: int = DEFAULT_HUB_THRESHOLD):
        self.hub_threshold = max(1, int(hub_threshold))

    @staticmethod
    def degree_maps(graph: ProjectGraph) -> Tuple[Dict[str, int], Dict[str, int]]:
        in_degree = {node.id: 0 for node in graph.nodes}
        out_degree = {node.id: 0 for node in graph.nodes}
        for edge in graph.edges:
            out_degree[edge.source] += 1
            in_degree[edge.target] += 1
        return in_degree, out_degree

    @staticmethod
    def density(graph: ProjectGraph) -> float:
        n = len(graph.nodes)
        if n <= 1:
            return 0.0
        return len(graph.edges) / (n * (n - 1))

    @staticmethod
    def reciprocal_pairs(edges: Iterable[EdgeRecord]) -> int:
        """Count unordered {a, b} with both a->b and b->a, once per pair."""
        directed = {(e.source, e.target) for e in edges}
        return sum(1 for a, b in directed if a < b and (b, a) in directed)

    @staticmethod
    def adjacency(graph: ProjectGraph) -> Dict[str, List[str]]:
        adjacency = {node.id: [] for node in graph.nodes}
        for edge in graph.edges:
            adjacency[edge.source].append(edge.target)
        return adjacency

    def analyze(self, graph: ProjectGraph) -> StructuralMetrics:
        in_degree, out_degree = self.degree_maps(graph)
        nodes = graph.nodes

        components = strongly_connected_components(
            [node.id for node in nodes], self.adjacency(graph)
        )
        cyclic = [c for c in components if len(c) >= 2]
        cyclic_nodes = frozenset(node_id for c in cyclic for node_id in c)
        participation = (len(cyclic_nodes) / len(nodes) * 100) if nodes else 0.0

        return StructuralMetrics(
            in_degree=in_degree,
            out_degree=out_degree,
            density=self.density(graph),
            reciprocity_pairs=self.reciprocal_pairs(graph.edges),
            convergent=sum(1 for n in nodes if in_degree[n.id] >= self.hub_threshold),
            divergent=sum(1 for n in nodes if out_degree[n.id] >= self.hub_threshold),
            sources=sum(1 for n in nodes if in_degree[n.id] == 0),
            sinks=sum(1 for n in nodes if out_degree[n.id] == 0),
            components=tuple(components),
            cyclic_nodes=cyclic_nodes,
            scc_count=len(cyclic),
            largest_scc=max((len(c) for c in cyclic), default=0),
            cycle_participation=participation,
        )


# ============================================================================
# TEMPORAL ANALYSIS
# ============================================================================


@dataclass(frozen=True)
class WeekBucket:
    """Exploring/making occurrences in one week since the project's start."""

    week: int
    exploring: int = 0
    making: int = 0

    @property
    def total(self) -> int:
        return self.exploring + self.making

    @property
    def overlaps(self) -> bool:
        return self.exploring > 0 and self.making > 0

    def to_dict(self) -> Dict[str, int]:
        return {"week": self.week, "exploring": self.exploring, "making": self.making}


@dataclass(frozen=True)
class TemporalMetrics:
    start_date: Optional[date]
    buckets: Tuple[WeekBucket, ...]
    timeline: Tuple[WeekBucket, ...]
    active_buckets: int
    overlap_buckets: int
    interlacing_index: float
    overlap_intensity: float
    e_to_m_edges: int
    m_to_e_edges: int
    conversion_rate: float
    feedback_ratio: float
    leadtime_median_days: Optional[float]
    temporal_edges: int
    temporal_back_edges: int
    temporal_back_share: float


def mode_transition(source: NodeRecord, target: NodeRecord) -> Optional[str]:
    """E_TO_M, M_TO_E, or None for any other pair of actions."""
    if source.action == EXPLORING and target.action == MAKING:
        return E_TO_M
    if source.action == MAKING and target.action == EXPLORING:
        return M_TO_E
    return None


def week_offset(day: date, start: date) -> int:
    return max(0, (day - start).days // 7)


class TemporalAnalyzer:
    """
    Weekly interlacing of the exploring/making modes and the timing of
    the edges between them.
    """

    def __init__(self, max_weeks: int = DEFAULT_MAX_WEEKS):
        self.max_weeks = max(4, int(max_weeks))

    @staticmethod
    def mode_start_date(graph: ProjectGraph) -> Optional[date]:
        dated = [n.date for n in graph.nodes if n.is_mode_node and n.date is not None]
        return min(dated) if dated else None

    @staticmethod
    def week_buckets(graph: ProjectGraph, start: Optional[date]) -> Dict[int, WeekBucket]:
        if start is None:
            return {}
        counts: Dict[int, Counter] = {}
        for node in graph.nodes:
            if not node.is_mode_node or node.date is None:
                continue
            counts.setdefault(week_offset(node.date, start), Counter())[node.action] += 1
        return {
            week: WeekBucket(week, c[EXPLORING], c[MAKING])
            for week, c in sorted(counts.items())
        }

    @staticmethod
    def interlacing(buckets: Iterable[WeekBucket]) -> Tuple[int, int, float, float]:
        """Returns (active, overlapping, interlacing index, overlap intensity)."""
        active = [b for b in buckets if b.total > 0]
        overlap = [b for b in active if b.overlaps]
        index = (len(overlap) / len(active) * 100) if active else 0.0
        intensity = 0.0
        if overlap:
            ratios = [min(b.exploring, b.making) / max(b.exploring, b.making) for b in overlap]
            intensity = sum(ratios) / len(overlap) * 100
        return len(active), len(overlap), index, intensity

    def timeline(self, buckets: Dict[int, WeekBucket]) -> Tuple[WeekBucket, ...]:
        """Dense weekly series capped at max_weeks, without trailing empty weeks."""
        capped = [w for w in buckets if w < self.max_weeks]
        if not capped:
            return ()
        return tuple(
            buckets.get(week, WeekBucket(week)) for week in range(max(capped) + 1)
        )

    def analyze(self, graph: ProjectGraph) -> TemporalMetrics:
        start = self.mode_start_date(graph)
        buckets = self.week_buckets(graph, start)
        active, overlapping, index, intensity = self.interlacing(buckets.values())

        e_to_m = 0
        m_to_e = 0
        converted = set()
        lead_times = []
        temporal_edges = 0
        back_edges = 0

        for edge in graph.edges:
            source, target = graph.endpoints(edge)

            if source.date is not None and target.date is not None:
                temporal_edges += 1
                if target.date < source.date:
                    back_edges += 1

            kind = mode_transition(source, target)
            if kind == E_TO_M:
                e_to_m += 1
                converted.add(source.id)
                if source.date is not None and target.date is not None:
                    days = (target.date - source.date).days
                    if days >= 0:
                        lead_times.append(days)
            elif kind == M_TO_E:
                m_to_e += 1

        # Denominator: exploring nodes with at least one outgoing edge
        with_outgoing = {edge.source for edge in graph.edges}
        exploring = sum(
            1 for n in graph.nodes if n.action == EXPLORING and n.id in with_outgoing
        )

        return TemporalMetrics(
            start_date=start,
            buckets=tuple(buckets.values()),
            timeline=self.timeline(buckets),
            active_buckets=active,
            overlap_buckets=overlapping,
            interlacing_index=index,
            overlap_intensity=intensity,
            e_to_m_edges=e_to_m,
            m_to_e_edges=m_to_e,
            conversion_rate=(len(converted) / exploring * 100) if exploring else 0.0,
            feedback_ratio=(m_to_e / e_to_m * 100) if e_to_m else 0.0,
            leadtime_median_days=statistics.median(lead_times) if lead_times else None,
            temporal_edges=temporal_edges,
            temporal_back_edges=back_edges,
            temporal_back_share=(back_edges / temporal_edges * 100) if temporal_edges else 0.0,
        )


# ============================================================================
# CROSS-CATEGORY ANALYSIS
# ============================================================================


@dataclass(frozen=True)
class CrossCategoryMetrics:
    macro_edges: int
    cross_macro_edges: int
    cross_macro_share: float
    macro_edge_coverage: float
    interlacing_edges: int
    interlacing_macro_edges: int
    cross_interlacing_edges: int
    cross_interlacing_share: float
    interlacing_macro_coverage: float


class CrossCategoryAnalyzer:
    """
    Share of edges crossing macro-categories, over all valid edges and over
    the mode-transition subset. Edges touching mixed/unknown nodes are left
    out; the coverage figures say how many edges qualified.
    """

    @staticmethod
    def _crossing(pairs: Sequence[Tuple[str, str]]) -> Tuple[int, int]:
        considered = [(a, b) for a, b in pairs if a in MACRO_CATEGORIES and b in MACRO_CATEGORIES]
        return len(considered), sum(1 for a, b in considered if a != b)

    def analyze(self, graph: ProjectGraph) -> CrossCategoryMetrics:
        all_pairs = []
        transition_pairs = []
        for edge in graph.edges:
            source, target = graph.endpoints(edge)
            pair = (source.macro_category, target.macro_category)
            all_pairs.append(pair)
            if mode_transition(source, target) is not None:
                transition_pairs.append(pair)

        considered, crossing = self._crossing(all_pairs)
        t_considered, t_crossing = self._crossing(transition_pairs)

        return CrossCategoryMetrics(
            macro_edges=considered,
            cross_macro_edges=crossing,
            cross_macro_share=(crossing / considered * 100) if considered else 0.0,
            macro_edge_coverage=(considered / len(all_pairs) * 100) if all_pairs else 0.0,
            interlacing_edges=len(transition_pairs),
            interlacing_macro_edges=t_considered,
            cross_interlacing_edges=t_crossing,
            cross_interlacing_share=(t_crossing / t_considered * 100) if t_considered else 0.0,
            interlacing_macro_coverage=(
                (t_considered / len(transition_pairs) * 100) if transition_pairs else 0.0
            ),
        )


# ============================================================================
# PROJECT METRICS COMPOSITION
# ============================================================================


_TRUE_STRINGS = ("true", "yes", "on", "1")
_FALSE_STRINGS = ("false", "no", "off", "0")


def parse_flag(value: Any) -> bool:
    """Read a boolean setting; quoted "false"/"0" strings are False."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"not a boolean: {value!r}")


@dataclass(frozen=True)
class EngineConfig:
    """Shared, read-only settings for every project of a run."""

    hub_threshold: int = DEFAULT_HUB_THRESHOLD
    max_weeks: int = DEFAULT_MAX_WEEKS
    span_years_warn: float = DEFAULT_SPAN_YEARS_WARN
    future_days_warn: int = DEFAULT_FUTURE_DAYS_WARN
    past_year_warn: int = DEFAULT_PAST_YEAR_WARN
    workers: int = 1
    fail_fast: bool = False

    def validated(self) -> Tuple["EngineConfig", List[str]]:
        """
        Revert out-of-range settings to their defaults.

        Returns:
            (config, warnings) where warnings describe each revert
        """
        rules = {
            "hub_threshold": (int, lambda v: v >= 1, DEFAULT_HUB_THRESHOLD),
            "max_weeks": (int, lambda v: v >= 4, DEFAULT_MAX_WEEKS),
            "span_years_warn": (float, lambda v: v >= 1, DEFAULT_SPAN_YEARS_WARN),
            "future_days_warn": (int, lambda v: v >= 0, DEFAULT_FUTURE_DAYS_WARN),
            "past_year_warn": (int, lambda v: v >= 1800, DEFAULT_PAST_YEAR_WARN),
            "workers": (int, lambda v: v >= 1, 1),
        }
        changes = {}
        warnings = []
        for name, (kind, ok, default) in rules.items():
            raw = getattr(self, name)
            try:
                value = kind(raw)
                valid = math.isfinite(value) and ok(value)
            except (TypeError, ValueError, OverflowError):
                value, valid = default, False
            if not valid:
                warnings.append(f"Invalid {name}={raw!r}, using default {default}")
                value = default
            changes[name] = value
        try:
            changes["fail_fast"] = parse_flag(self.fail_fast)
        except ValueError:
            warnings.append(f"Invalid fail_fast={self.fail_fast!r}, using default False")
            changes["fail_fast"] = False
        return replace(self, **changes), warnings


def frequency_table(values: Iterable[str]) -> Tuple[Tuple[str, int], ...]:
    """(label, count) pairs by count descending; ties keep first-seen order."""
    counts = Counter(values)
    return tuple(sorted(counts.items(), key=lambda item: -item[1]))


def _percent(part: float, whole: float) -> float:
    return (part / whole * 100) if whole else 0.0


@dataclass(frozen=True)
class ProjectMetrics:
    """Immutable per-project record; the public artefact renderers consume."""

    project: str
    nodes: int
    edges: int
    exploring: int
    making: int
    other: int
    sources: int
    sinks: int
    interlacing_index: float
    overlap_intensity: float
    active_buckets: int
    overlap_buckets: int
    scc_count: int
    largest_scc: int
    cycle_participation: float
    conversion_rate: float
    feedback_ratio: float
    leadtime_median_days: Optional[float]
    e_to_m_edges: int
    m_to_e_edges: int
    interlacing_edges: int
    cross_macro_share: float
    macro_edge_coverage: float
    cross_interlacing_share: float
    interlacing_macro_coverage: float
    multi_area_share: float
    avg_areas: float
    convergent: int
    divergent: int
    reciprocity_pairs: int
    density: float
    temporal_back_share: float
    min_date: Optional[date]
    max_date: Optional[date]
    span_days: Optional[int]
    type_counts: Tuple[Tuple[str, int], ...] = ()
    area_counts: Tuple[Tuple[str, int], ...] = ()
    macro_counts: Tuple[Tuple[str, int], ...] = ()
    timeline: Tuple[WeekBucket, ...] = ()
    data_quality: DataQuality = field(default_factory=DataQuality)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "nodes": self.nodes,
            "edges": self.edges,
            "exploring": self.exploring,
            "making": self.making,
            "other": self.other,
            "sources": self.sources,
            "sinks": self.sinks,
            "interlacingIndex": self.interlacing_index,
            "overlapIntensity": self.overlap_intensity,
            "activeBuckets": self.active_buckets,
            "overlapBuckets": self.overlap_buckets,
            "sccCount": self.scc_count,
            "largestScc": self.largest_scc,
            "cycleParticipation": self.cycle_participation,
            "conversionRate": self.conversion_rate,
            "feedbackRatio": self.feedback_ratio,
            "leadtimeMedianDays": self.leadtime_median_days,
            "eToMEdges": self.e_to_m_edges,
            "mToEEdges": self.m_to_e_edges,
            "interlacingEdges": self.interlacing_edges,
            "crossMacroShare": self.cross_macro_share,
            "macroEdgeCoverage": self.macro_edge_coverage,
            "crossInterlacingShare": self.cross_interlacing_share,
            "interlacingMacroCoverage": self.interlacing_macro_coverage,
            "multiAreaShare": self.multi_area_share,
            "avgAreas": self.avg_areas,
            "convergent": self.convergent,
            "divergent": self.divergent,
            "reciprocityPairs": self.reciprocity_pairs,
            "density": self.density,
            "temporalBackShare": self.temporal_back_share,
            "minDate": self.min_date.isoformat() if self.min_date else "",
            "maxDate": self.max_date.isoformat() if self.max_date else "",
            "spanDays": self.span_days,
            "typeCounts": [list(item) for item in self.type_counts],
            "areaCounts": [list(item) for item in self.area_counts],
            "macroCounts": [list(item) for item in self.macro_counts],
            "timeline": [bucket.to_dict() for bucket in self.timeline],
            "dataQuality": self.data_quality.to_dict(),
        }


class ProjectMetricsComposer:
    """Runs the three analyzers over one graph and merges their output."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.structural = StructuralAnalyzer(self.config.hub_threshold)
        self.temporal = TemporalAnalyzer(self.config.max_weeks)
        self.cross_category = CrossCategoryAnalyzer()

    def compose(self, graph: ProjectGraph) -> ProjectMetrics:
        structure = self.structural.analyze(graph)
        timing = self.temporal.analyze(graph)
        crossing = self.cross_category.analyze(graph)

        nodes = graph.nodes
        count = len(nodes)
        actions = Counter(node.action for node in nodes)
        dated = [node.date for node in nodes if node.date is not None]
        min_date = min(dated) if dated else None
        max_date = max(dated) if dated else None

        return ProjectMetrics(
            project=graph.name,
            nodes=count,
            edges=len(graph.edges),
            exploring=actions[EXPLORING],
            making=actions[MAKING],
            other=actions[OTHER],
            sources=structure.sources,
            sinks=structure.sinks,
            interlacing_index=timing.interlacing_index,
            overlap_intensity=timing.overlap_intensity,
            active_buckets=timing.active_buckets,
            overlap_buckets=timing.overlap_buckets,
            scc_count=structure.scc_count,
            largest_scc=structure.largest_scc,
            cycle_participation=structure.cycle_participation,
            conversion_rate=timing.conversion_rate,
            feedback_ratio=timing.feedback_ratio,
            leadtime_median_days=timing.leadtime_median_days,
            e_to_m_edges=timing.e_to_m_edges,
            m_to_e_edges=timing.m_to_e_edges,
            interlacing_edges=crossing.interlacing_edges,
            cross_macro_share=crossing.cross_macro_share,
            macro_edge_coverage=crossing.macro_edge_coverage,
            cross_interlacing_share=crossing.cross_interlacing_share,
            interlacing_macro_coverage=crossing.interlacing_macro_coverage,
            multi_area_share=_percent(sum(1 for n in nodes if len(n.areas) > 1), count),
            avg_areas=(sum(len(n.areas) for n in nodes) / count) if count else 0.0,
            convergent=structure.convergent,
            divergent=structure.divergent,
            reciprocity_pairs=structure.reciprocity_pairs,
            density=structure.density * 100,
            temporal_back_share=timing.temporal_back_share,
            min_date=min_date,
            max_date=max_date,
            span_days=(max_date - min_date).days if dated else None,
            type_counts=frequency_table(node.type or "(none)" for node in nodes),
            area_counts=frequency_table(area for node in nodes for area in node.areas),
            macro_counts=frequency_table(node.macro_category for node in nodes),
            timeline=timing.timeline,
            data_quality=graph.quality,
        )


def analyze_document(
    document: Any, name: str = "", config: Optional[EngineConfig] = None
) -> ProjectMetrics:
    """Load a raw document and compute its metrics."""
    return ProjectMetricsComposer(config).compose(load_document(document, name))


def analyze_project_file(
    source: ProjectSource, config: Optional[EngineConfig] = None
) -> ProjectMetrics:
    return ProjectMetricsComposer(config).compose(load_project_file(source.path, source.name))


# ============================================================================
# COHORT AGGREGATION
# ============================================================================


@dataclass(frozen=True)
class MetricSummary:
    mean: Optional[float] = None
    median: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    count: int = 0

    @classmethod
    def from_values(cls, values: Iterable[Any]) -> "MetricSummary":
        finite = [
            float(v)
            for v in values
            if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
        ]
        if not finite:
            return cls()
        return cls(
            mean=sum(finite) / len(finite),
            median=statistics.median(finite),
            min=min(finite),
            max=max(finite),
            count=len(finite),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mean": self.mean,
            "median": self.median,
            "min": self.min,
            "max": self.max,
            "count": self.count,
        }


@dataclass(frozen=True)
class TimelineWeek:
    week: int
    exploring: float
    making: float

    @property
    def total(self) -> float:
        return self.exploring + self.making

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week": self.week,
            "exploring": self.exploring,
            "making": self.making,
            "total": self.total,
        }


@dataclass(frozen=True)
class ProjectFlag:
    project: str
    reason: str

    def __str__(self) -> str:
        return f"{self.project} ({self.reason})"


@dataclass(frozen=True)
class ProjectError:
    project: str
    file: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"project": self.project, "file": self.file, "error": self.error}


@dataclass(frozen=True)
class CohortSummary:
    project_count: int
    total_nodes: int
    total_edges: int
    total_exploring: int
    total_making: int
    aggregates: Dict[str, MetricSummary]
    timeline_projects: int
    timeline: Tuple[TimelineWeek, ...]
    flagged_projects: Tuple[ProjectFlag, ...] = ()
    top_types: Tuple[Tuple[str, int], ...] = ()
    top_areas: Tuple[Tuple[str, int], ...] = ()
    macro_counts: Tuple[Tuple[str, int], ...] = ()
    total_area_mentions: int = 0
    errors: Tuple[ProjectError, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": SCHEMA_VERSION,
            "projectCount": self.project_count,
            "totalNodes": self.total_nodes,
            "totalEdges": self.total_edges,
            "totalExploring": self.total_exploring,
            "totalMaking": self.total_making,
            "agg": {key: summary.to_dict() for key, summary in self.aggregates.items()},
            "averageTimeline": {
                "projectsUsed": self.timeline_projects,
                "weeks": [week.to_dict() for week in self.timeline],
            },
            "flaggedProjects": [str(flag) for flag in self.flagged_projects],
            "topTypes": [list(item) for item in self.top_types],
            "topAreas": [list(item) for item in self.top_areas],
            "macroCounts": [list(item) for item in self.macro_counts],
            "totalAreaMentions": self.total_area_mentions,
            "errors": [error.to_dict() for error in self.errors],
        }


def _merged_counts(tables: Iterable[Iterable[Tuple[str, int]]]) -> Counter:
    merged = Counter()
    for table in tables:
        for label, count in table:
            merged[label] += count
    return merged


class CohortAggregator:
    """
    Reduce per-project records into cohort statistics.

    Flag thresholds only decide which projects are listed as suspicious;
    they never change metric values. The reference date for future-date
    flags is passed in, the aggregator does not read the clock.
    """

    TOP_N = 20

    def __init__(
        self, config: Optional[EngineConfig] = None, reference_date: Optional[date] = None
    ):
        self.config = config or EngineConfig()
        self.reference_date = reference_date

    def average_timeline(
        self, results: Sequence[ProjectMetrics]
    ) -> Tuple[int, Tuple[TimelineWeek, ...]]:
        max_weeks = max(4, int(self.config.max_weeks))
        exploring = [0.0] * max_weeks
        making = [0.0] * max_weeks
        used = 0

        for result in results:
            if not result.timeline:
                continue
            used += 1
            for bucket in result.timeline[:max_weeks]:
                exploring[bucket.week] += bucket.exploring
                making[bucket.week] += bucket.making

        divisor = max(1, used)
        weeks = [
            TimelineWeek(i + 1, exploring[i] / divisor, making[i] / divisor)
            for i in range(max_weeks)
        ]
        while weeks and weeks[-1].total == 0:
            weeks.pop()
        return used, tuple(weeks)

    def flags_for(self, result: ProjectMetrics) -> List[ProjectFlag]:
        flags = []
        span_limit = self.config.span_years_warn * 365
        if result.span_days is not None and result.span_days > span_limit:
            flags.append(
                ProjectFlag(result.project, f"span ~{round(result.span_days / 365)}y")
            )
        if self.reference_date is not None and result.max_date is not None:
            cutoff = self.reference_date + timedelta(days=self.config.future_days_warn)
            if result.max_date > cutoff:
                flags.append(
                    ProjectFlag(result.project, f"future date {result.max_date.isoformat()}")
                )
        if result.min_date is not None and result.min_date.year < self.config.past_year_warn:
            flags.append(
                ProjectFlag(result.project, f"date before {self.config.past_year_warn}")
            )
        return flags

    def aggregate(
        self, results: Sequence[ProjectMetrics], errors: Sequence[ProjectError] = ()
    ) -> CohortSummary:
        rows = [result.to_dict() for result in results]
        aggregates = {
            key: MetricSummary.from_values(row[key] for row in rows) for key in AGGREGATE_KEYS
        }
        used, timeline = self.average_timeline(results)
        areas = _merged_counts(r.area_counts for r in results)

        flags = []
        for result in results:
            flags.extend(self.flags_for(result))

        return CohortSummary(
            project_count=len(results),
            total_nodes=sum(r.nodes for r in results),
            total_edges=sum(r.edges for r in results),
            total_exploring=sum(r.exploring for r in results),
            total_making=sum(r.making for r in results),
            aggregates=aggregates,
            timeline_projects=used,
            timeline=timeline,
            flagged_projects=tuple(flags),
            top_types=tuple(_merged_counts(r.type_counts for r in results).most_common(self.TOP_N)),
            top_areas=tuple(areas.most_common(self.TOP_N)),
            macro_counts=tuple(_merged_counts(r.macro_counts for r in results).most_common()),
            total_area_mentions=sum(areas.values()),
            errors=tuple(errors),
        )


# ============================================================================
# CSV PROJECTION
# ============================================================================


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if not math.isfinite(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def metrics_to_csv(results: Sequence[ProjectMetrics]) -> str:
    """Fixed-column CSV projection of the per-project records, all cells quoted."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for result in results:
        row = result.to_dict()
        writer.writerow([_csv_cell(row[column]) for column in CSV_COLUMNS])
    return buffer.getvalue()


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================


CONFIG_FILE_NAMES = (".threadscape.yaml", ".threadscape.yml", ".threadscape.json")


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file."""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {config_path}")
    return data


def find_config_file(corpus_path: str) -> Optional[str]:
    """
    Auto-discover a configuration file next to the corpus or in the current
    directory.
    """
    base = corpus_path if os.path.isdir(corpus_path) else os.path.dirname(corpus_path)
    for search_dir in (base, os.getcwd()):
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


class ConfigResolver:
    """Resolve configuration with precedence: CLI > Config File > Defaults"""

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        corpus_path: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.source = config_path
        self.warnings: List[str] = []

        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(corpus_path)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.source = auto_path
                except (OSError, ValueError, yaml.YAMLError) as e:
                    self.warnings.append(f"Found config file but failed to load: {e}")

        # kebab-case keys are accepted in files
        self.config = {str(k).replace("-", "_"): v for k, v in self.config.items()}

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        return default

    def engine_config(self) -> Tuple[EngineConfig, List[str]]:
        defaults = EngineConfig()
        config = EngineConfig(
            hub_threshold=self.get("hub_threshold", defaults.hub_threshold),
            max_weeks=self.get("max_weeks", defaults.max_weeks),
            span_years_warn=self.get("span_years_warn", defaults.span_years_warn),
            future_days_warn=self.get("future_days_warn", defaults.future_days_warn),
            past_year_warn=self.get("past_year_warn", defaults.past_year_warn),
            workers=self.get("workers", defaults.workers),
            fail_fast=self.get("fail_fast", defaults.fail_fast),
        )
        return config.validated()


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console progress reporting.
    - Color-coded output (colorama)
    - Progress bars with percentage (tqdm)
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        """Apply color if enabled"""
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        """Mark the start of a processing stage"""
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()

        separator = self._colorize("=" * 70, Fore.CYAN)
        stage_text = self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT)

        print(f"\n{separator}")
        print(stage_text)
        if message:
            print(f"   {message}")
        print(separator)

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        """Mark completion of a processing stage"""
        if self.quiet:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())

        complete_text = self._colorize(
            f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
        )
        print(complete_text)

        if stats and self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}")

    def create_progress_bar(self, total: int, desc: str = "Processing") -> Optional[tqdm]:
        """Create a progress bar with ETA"""
        if self.quiet:
            return None

        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=" projects",
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        )

    def info(self, message: str):
        """Display informational message"""
        if not self.quiet:
            info_text = self._colorize("ℹ️  ", Fore.BLUE)
            print(f"{info_text}{message}")

    def warning(self, message: str):
        """Display warning message"""
        if not self.quiet:
            warning_text = self._colorize("⚠️  ", Fore.YELLOW + Style.BRIGHT)
            print(f"{warning_text}{message}")

    def error(self, message: str):
        """Display error message (always shown)"""
        error_text = self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT)
        print(error_text, file=sys.stderr)

    def success(self, message: str):
        """Display success message"""
        if not self.quiet:
            success_text = self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT)
            print(success_text)

    def summary(self, stats: Dict[str, Any]):
        """Display final summary"""
        if self.quiet:
            return
        elapsed = time.time() - self.start_time

        separator = self._colorize("=" * 70, Fore.CYAN)
        header = self._colorize("📊 ANALYSIS SUMMARY", Fore.MAGENTA + Style.BRIGHT)

        print(f"\n{separator}")
        print(header)
        print(separator)
        for key, value in stats.items():
            print(f"   {key}: {value}")

        time_text = self._colorize(f"⏱️  Total time: {elapsed:.2f}s", Fore.YELLOW)
        print(f"\n{time_text}")
        print(f"{separator}\n")


# ============================================================================
# PERFORMANCE TRACKING
# ============================================================================


class MemoryMonitor:
    """Track resident memory of the running process"""

    def __init__(self):
        self.peak_mb = 0.0

    def check_memory(self) -> float:
        """Get current memory usage in MB"""
        process = psutil.Process(os.getpid())
        memory_mb = process.memory_info().rss / 1024 / 1024
        self.peak_mb = max(self.peak_mb, memory_mb)
        return memory_mb

    def get_peak(self) -> float:
        return self.peak_mb


class ProfilingContext:
    """Context manager for performance profiling"""

    def __init__(self, enabled: bool = False, output_path: Optional[str] = None):
        self.enabled = enabled
        self.output_path = output_path
        self.profiler = None

    def __enter__(self):
        if self.enabled:
            self.profiler = cProfile.Profile()
            self.profiler.enable()
        return self

    def __exit__(self, *args):
        if self.enabled and self.profiler:
            self.profiler.disable()

            if self.output_path:
                self.profiler.dump_stats(self.output_path)

            s = io.StringIO()
            ps = pstats.Stats(self.profiler, stream=s)
            ps.strip_dirs()
            ps.sort_stats("cumulative")
            ps.print_stats(20)
            print(f"\n{'='*70}")
            print("PERFORMANCE PROFILE (Top 20 functions by cumulative time)")
            print(f"{'='*70}")
            print(s.getvalue())


@dataclass
class PerformanceMetrics:
    projects_processed: int = 0
    projects_failed: int = 0
    nodes_processed: int = 0
    edges_processed: int = 0
    memory_peak_mb: float = 0.0
    total_time: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "projects_processed": self.projects_processed,
            "projects_failed": self.projects_failed,
            "nodes_processed": self.nodes_processed,
            "edges_processed": self.edges_processed,
            "memory_peak_mb": round(self.memory_peak_mb, 2),
            "total_time_seconds": round(self.total_time, 2),
        }


# ============================================================================
# CORPUS ANALYZER (BATCH RUNNER)
# ============================================================================


class CorpusAnalyzer:
    """
    Runs every project through load -> analyze -> compose, then aggregates.

    A failing project is recorded in ``errors`` and skipped; no exception
    leaves ``run``. Projects share no mutable state, so with ``workers > 1``
    they are analyzed on a thread pool and re-sorted by name afterwards.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        reporter: Optional[ProgressReporter] = None,
        reference_date: Optional[date] = None,
    ):
        self.config = config or EngineConfig()
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.reference_date = reference_date
        self.results: List[ProjectMetrics] = []
        self.errors: List[ProjectError] = []
        self.summary: Optional[CohortSummary] = None
        self.metrics = PerformanceMetrics()
        self.memory_monitor = MemoryMonitor()

    def _record_error(self, source: ProjectSource, exc: BaseException):
        self.errors.append(ProjectError(source.name, source.path, str(exc)))
        self.reporter.warning(f"Skipping {source.name}: {exc}")

    def _run_sequential(self, sources: Sequence[ProjectSource], progress_bar):
        for source in sources:
            try:
                self.results.append(analyze_project_file(source, self.config))
            except Exception as e:
                self._record_error(source, e)
                if self.config.fail_fast:
                    break
            finally:
                if progress_bar:
                    progress_bar.update(1)

    def _run_parallel(self, sources: Sequence[ProjectSource], progress_bar):
        with ThreadPoolExecutor(max_workers=self.config.workers) as executor:
            futures = {
                executor.submit(analyze_project_file, source, self.config): source
                for source in sources
            }
            for future in as_completed(futures):
                source = futures[future]
                if progress_bar:
                    progress_bar.update(1)
                try:
                    self.results.append(future.result())
                except Exception as e:
                    self._record_error(source, e)
                    if self.config.fail_fast:
                        # Projects still running finish, but nothing after
                        # the first error is recorded
                        executor.shutdown(wait=False, cancel_futures=True)
                        break

    def run(self, sources: Sequence[ProjectSource]) -> CohortSummary:
        start_time = time.time()
        self.results = []
        self.errors = []
        self.reporter.stage_start("Project Analysis", f"Analyzing {len(sources)} project(s)...")

        progress_bar = self.reporter.create_progress_bar(
            total=len(sources), desc="Analyzing projects"
        )
        if self.config.workers > 1:
            self._run_parallel(sources, progress_bar)
        else:
            self._run_sequential(sources, progress_bar)
        if progress_bar:
            progress_bar.close()

        self.results.sort(key=lambda r: r.project)
        order = {source.name: i for i, source in enumerate(sources)}
        self.errors.sort(key=lambda e: order.get(e.project, len(order)))

        self.reporter.stage_complete(
            "Project Analysis",
            {
                "Projects analyzed": len(self.results),
                "Projects failed": len(self.errors),
            },
        )

        # Fan-in: every per-project record exists before reduction
        self.reporter.stage_start("Cohort Aggregation")
        aggregator = CohortAggregator(self.config, self.reference_date)
        self.summary = aggregator.aggregate(self.results, self.errors)
        self.reporter.stage_complete(
            "Cohort Aggregation",
            {
                "Flagged projects": len(self.summary.flagged_projects),
                "Timeline weeks": len(self.summary.timeline),
            },
        )

        self.metrics.projects_processed = len(self.results)
        self.metrics.projects_failed = len(self.errors)
        self.metrics.nodes_processed = self.summary.total_nodes
        self.metrics.edges_processed = self.summary.total_edges
        self.memory_monitor.check_memory()
        self.metrics.memory_peak_mb = self.memory_monitor.get_peak()
        self.metrics.total_time = time.time() - start_time
        return self.summary


# ============================================================================
# EXPORT & MANIFEST
# ============================================================================


def _write_json(output_path: str, data: Any):
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def export_results(
    output_dir: str,
    results: Sequence[ProjectMetrics],
    summary: CohortSummary,
) -> Dict[str, str]:
    """
    Write the per-project records, cohort summary, CSV projection and
    error log.

    Returns:
        dataset name -> path relative to output_dir
    """
    os.makedirs(output_dir, exist_ok=True)
    datasets = {}

    _write_json(
        os.path.join(output_dir, "project_metrics.json"),
        {
            "schema_version": SCHEMA_VERSION,
            "total_projects": len(results),
            "projects": [result.to_dict() for result in results],
        },
    )
    datasets["project_metrics"] = "project_metrics.json"

    _write_json(os.path.join(output_dir, "cohort_summary.json"), summary.to_dict())
    datasets["cohort_summary"] = "cohort_summary.json"

    with open(
        os.path.join(output_dir, "process_metrics.csv"), "w", encoding="utf-8", newline=""
    ) as f:
        f.write(metrics_to_csv(results))
    datasets["process_metrics_csv"] = "process_metrics.csv"

    if summary.errors:
        with open(os.path.join(output_dir, "errors.txt"), "w", encoding="utf-8") as f:
            f.write(
                "\n".join(f"{e.project}: {e.error} ({e.file})" for e in summary.errors)
            )
        datasets["errors"] = "errors.txt"

    return datasets


def generate_manifest(
    output_dir: str,
    datasets: Dict[str, str],
    config: EngineConfig,
    performance: Optional[PerformanceMetrics] = None,
    corpus_path: str = "",
) -> Dict[str, Any]:
    """Generate manifest.json with dataset metadata"""
    manifest = {
        "generator_version": VERSION,
        "schema_version": SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "corpus": corpus_path,
        "configuration": {
            "hub_threshold": config.hub_threshold,
            "max_weeks": config.max_weeks,
            "span_years_warn": config.span_years_warn,
            "future_days_warn": config.future_days_warn,
            "past_year_warn": config.past_year_warn,
        },
        "performance_metrics": performance.to_dict() if performance else {},
        "datasets": {},
    }

    for dataset_name, file_path in datasets.items():
        full_path = os.path.join(output_dir, file_path)
        if os.path.exists(full_path):
            with open(full_path, "rb") as f:
                data = f.read()

            manifest["datasets"][dataset_name] = {
                "file": file_path,
                "file_size_bytes": len(data),
                "sha256": hashlib.sha256(data).hexdigest(),
            }

    _write_json(os.path.join(output_dir, "manifest.json"), manifest)
    return manifest


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument(
    "corpus_path",
    type=click.Path(exists=True, resolve_path=True),
    required=False,
)
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory (default: threadscape_output_TIMESTAMP)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
# Engine settings
@click.option("--hub-threshold", type=int, help="In/out-degree for hub nodes (default 4)")
@click.option("--max-weeks", type=int, help="Week cap for timelines (default 200)")
# Flag thresholds (reporting only)
@click.option("--span-years-warn", type=float, help="Flag projects spanning more years")
@click.option("--future-days-warn", type=int, help="Flag dates this many days past today")
@click.option("--past-year-warn", type=int, help="Flag dates before this year")
# Execution
@click.option("--workers", type=int, help="Projects analyzed in parallel (default 1)")
@click.option(
    "--fail-fast",
    is_flag=True,
    default=None,
    help="Stop at the first project that fails instead of skipping it",
)
@click.option(
    "--profile", is_flag=True, default=None, help="Enable performance profiling"
)
@click.option(
    "--profile-output", default=None, help="Profile output file (default profile_stats.prof)"
)
# Output Control
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show detailed progress information",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option(
    "--dry-run",
    is_flag=True,
    help="List discovered projects and settings without analysing",
)
@click.version_option(version=VERSION)
def main(corpus_path, output, config, **kwargs):
    """
    Threadscape Process Metrics

    Computes structural and temporal metrics for every project.json found
    in the numbered folders of CORPUS_PATH and summarises the cohort.
    """
    if not corpus_path:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(2)

    try:
        resolver = ConfigResolver(kwargs, config, corpus_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        ProgressReporter(use_colors=not kwargs.get("no_color")).error(
            f"Cannot load configuration: {e}"
        )
        sys.exit(1)

    quiet = bool(resolver.get("quiet", False))
    verbose = bool(resolver.get("verbose", False))
    no_color = bool(resolver.get("no_color", False))
    reporter = ProgressReporter(quiet=quiet, verbose=verbose, use_colors=not no_color)

    if resolver.source:
        reporter.info(f"Configuration: {resolver.source}")
    engine_config, warnings = resolver.engine_config()
    for message in resolver.warnings + warnings:
        reporter.warning(message)

    sources = discover_projects(corpus_path)
    if not sources:
        reporter.error(f"No project.json found in numbered folders of {corpus_path}")
        sys.exit(1)

    if kwargs.get("dry_run"):
        reporter.info("DRY RUN MODE - No analysis will be performed")
        reporter.info(f"Corpus: {corpus_path}")
        reporter.info(f"Hub threshold: {engine_config.hub_threshold}")
        reporter.info(f"Week cap: {engine_config.max_weeks}")
        reporter.info(f"Workers: {engine_config.workers}")
        reporter.info(f"Projects ({len(sources)}):")
        for source in sources:
            reporter.info(f"  ✓ {source.name}")
        return

    if output:
        output_dir = output
    else:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_dir = f"threadscape_output_{timestamp}"

    os.makedirs(output_dir, exist_ok=True)
    reporter.info(f"Output directory: {output_dir}")

    profile = bool(resolver.get("profile", False))
    profile_path = (
        os.path.join(output_dir, resolver.get("profile_output", "profile_stats.prof"))
        if profile
        else None
    )

    try:
        with ProfilingContext(enabled=profile, output_path=profile_path):
            analyzer = CorpusAnalyzer(engine_config, reporter, reference_date=date.today())
            summary = analyzer.run(sources)

            reporter.stage_start("Export", "Writing metrics datasets...")
            datasets = export_results(output_dir, analyzer.results, summary)
            generate_manifest(
                output_dir, datasets, engine_config, analyzer.metrics, corpus_path
            )
            reporter.stage_complete("Export", {"Datasets": len(datasets)})

        if summary.errors:
            reporter.warning(
                f"{len(summary.errors)} project(s) failed, see errors.txt"
            )
        for flag in summary.flagged_projects:
            reporter.warning(f"Flagged: {flag}")

        reporter.summary(
            {
                "Corpus": corpus_path,
                "Output directory": output_dir,
                "Projects analyzed": summary.project_count,
                "Projects failed": len(summary.errors),
                "Total nodes": f"{summary.total_nodes:,}",
                "Total edges": f"{summary.total_edges:,}",
                "Flagged projects": len(summary.flagged_projects),
            }
        )
        reporter.success(f"Analysis complete! Results saved to: {output_dir}")

    except Exception as e:
        reporter.error(f"Analysis failed: {str(e)}")
        if verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
