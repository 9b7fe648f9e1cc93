#!/usr/bin/env python3
"""
Vigil - Concurrency hazard detection over a normalized program IR

High-level goals:
- Describe the concurrency-relevant facts of one program unit as an immutable IR
  (bindings, locks, critical sections, tasks, channels, maps, timers, instants)
- Evaluate a fixed catalog of hazard detectors against it
- Resolve suppression annotations and confidence overrides
- Emit a stable, structured diagnostic stream for CI / IDEs

Language front-ends own parsing; they hand the engine an IR (directly, or as a
YAML/JSON document read by DocumentIRBuilder).

This file is intentionally single-module; sections are delimited by banners.
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Sequence, Set, Tuple, Union
import argparse
from collections import deque
import json
import os
import re
import sys
import threading
import time

import yaml


__version__ = "0.3.0"


BindingCategory = Literal["primitive", "compound", "atomic"]
LockKind = Literal["exclusive", "read_write"]
ExitKind = Literal["return", "raise", "end"]
AccessKind = Literal["read", "write"]
CaptureMode = Literal["by_reference", "by_value"]
ChannelCapacity = Literal["zero", "bounded", "unbounded"]
MapOperationKind = Literal["load", "store", "delete", "load_or_store", "load_and_delete"]
TimerKind = Literal["one_shot", "repeating"]
ComparisonOperator = Literal["equals", "before", "after"]
RunOutcome = Literal["clean", "findings", "engine_error"]

SEVERITY_LEVELS: Tuple[str, ...] = ("info", "low", "medium", "high", "error")
CONFIDENCE_LEVELS: Tuple[str, ...] = ("low", "medium", "high")

ALL_RULES = "all"

# Rule ids reserved for findings about the run itself rather than the program.
INGEST_RULE = "ingest"
INTERNAL_RULE = "internal"
TIMEOUT_RULE = "timeout"
PARTIAL_RULE = "partial"
ENGINE_RULE_IDS: Tuple[str, ...] = (INGEST_RULE, INTERNAL_RULE, TIMEOUT_RULE, PARTIAL_RULE)


# ============================================================
# ============ SOURCE LOCATION & ANNOTATIONS =================
# ============================================================

@dataclass(frozen=True, order=True)
class SourceLocation:
    file: str
    line: int
    column: int = 0

    def __str__(self) -> str:
        if self.column:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}:{self.line}"


@dataclass(frozen=True)
class Annotation:
    """
    Suppression marker the front-end attached to an IR node or a source line.
    Example: // vigil:ignore Sc.1 -- rendezvous with the UI loop

    `rule_id` names one rule or "all". A marker-only annotation (rule_id None)
    such as "intentional" applies to the rules that recognise that marker.
    """
    rule_id: Optional[str] = None
    marker: Optional[str] = None
    justification: str = ""
    location: Optional[SourceLocation] = None

    def matches(self, rule_id: str, markers: Sequence[str] = ()) -> bool:
        if self.rule_id is not None:
            return self.rule_id in (rule_id, ALL_RULES)
        return self.marker is not None and self.marker in markers


# ============================================================
# ================= BINDINGS & LOCKS =========================
# ============================================================

@dataclass(frozen=True)
class Binding:
    """A named storage location."""
    name: str
    mutable: bool = True
    category: BindingCategory = "primitive"
    scope: str = "unit"  # declaring scope, e.g. "unit", "func:worker"
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()

    @property
    def is_shared_candidate(self) -> bool:
        return self.mutable and self.category != "atomic"


@dataclass(frozen=True)
class Lock:
    name: str
    kind: LockKind = "exclusive"
    protects: Tuple[str, ...] = ()  # empty: the front-end could not tell
    location: Optional[SourceLocation] = None

    def guards(self, binding: str) -> bool:
        return not self.protects or binding in self.protects


# ============================================================
# ================= CONTROL FLOW GRAPH =======================
# ============================================================

@dataclass(frozen=True)
class BasicBlock:
    block_id: int
    successors: Tuple[int, ...] = ()
    exit_kind: Optional[ExitKind] = None  # set on blocks that leave the scope
    location: Optional[SourceLocation] = None
    label: Optional[str] = None           # e.g. "if err != nil", "loop body"


def _exit_kind_text(kind: Optional[str]) -> str:
    return {
        "return": "return",
        "raise": "propagated failure",
        "end": "end of scope",
    }.get(kind or "", "exit")


@dataclass(frozen=True)
class ControlFlowGraph:
    """
    Arena of basic blocks; a block's id is its index in `blocks`.
    All traversals are explicit worklists so loops and deep graphs are safe.
    """
    blocks: Tuple[BasicBlock, ...] = ()
    entry: int = 0

    def block(self, block_id: int) -> Optional[BasicBlock]:
        if 0 <= block_id < len(self.blocks):
            return self.blocks[block_id]
        return None

    def exit_kind(self, block_id: int) -> Optional[str]:
        """Explicit exit kind, or "end" for a block with nowhere left to go."""
        block = self.block(block_id)
        if block is None:
            return None
        if block.exit_kind is not None:
            return block.exit_kind
        return None if self.successors(block_id) else "end"

    @property
    def exit_blocks(self) -> List[int]:
        return [index for index in range(len(self.blocks)) if self.exit_kind(index) is not None]

    def successors(self, block_id: int) -> List[int]:
        block = self.block(block_id)
        if block is None:
            return []
        return [succ for succ in block.successors if 0 <= succ < len(self.blocks)]

    def predecessors(self) -> Dict[int, List[int]]:
        preds: Dict[int, List[int]] = {index: [] for index in range(len(self.blocks))}
        for index in range(len(self.blocks)):
            for succ in self.successors(index):
                if index not in preds[succ]:
                    preds[succ].append(index)
        return preds

    def reachable_blocks(self, start: Optional[int] = None) -> Set[int]:
        origin = self.entry if start is None else start
        if self.block(origin) is None:
            return set()
        seen = {origin}
        worklist = deque([origin])
        while worklist:
            node = worklist.popleft()
            for succ in self.successors(node):
                if succ not in seen:
                    seen.add(succ)
                    worklist.append(succ)
        return seen

    def dominators(self) -> Dict[int, Set[int]]:
        """
        Dominator sets for every block reachable from the entry.
        Iterative dataflow driven by a worklist; converges on back-edges.
        """
        reachable = self.reachable_blocks()
        if not reachable:
            return {}
        preds = self.predecessors()
        dom: Dict[int, Set[int]] = {node: set(reachable) for node in reachable}
        dom[self.entry] = {self.entry}

        worklist = deque(sorted(reachable - {self.entry}))
        queued = set(worklist)
        while worklist:
            node = worklist.popleft()
            queued.discard(node)
            incoming = [dom[pred] for pred in preds.get(node, []) if pred in reachable]
            updated = set.intersection(*incoming) if incoming else set()
            updated.add(node)
            if updated != dom[node]:
                dom[node] = updated
                for succ in self.successors(node):
                    if succ != self.entry and succ not in queued:
                        worklist.append(succ)
                        queued.add(succ)
        return dom

    def paths_to_exits(self, start: int, blocked: Iterable[int] = ()) -> List[List[int]]:
        """
        Shortest block path from `start` to every exit block reachable without
        entering a block in `blocked`. Sorted by exit block id.
        """
        blocked_set = set(blocked)
        if self.block(start) is None or start in blocked_set:
            return []

        parent: Dict[int, Optional[int]] = {start: None}
        worklist = deque([start])
        exits: List[int] = []
        while worklist:
            node = worklist.popleft()
            if self.exit_kind(node) is not None:
                exits.append(node)
                continue
            for succ in self.successors(node):
                if succ in parent or succ in blocked_set:
                    continue
                parent[succ] = node
                worklist.append(succ)

        paths: List[List[int]] = []
        for exit_id in sorted(exits):
            path: List[int] = []
            cursor: Optional[int] = exit_id
            while cursor is not None:
                path.append(cursor)
                cursor = parent[cursor]
            paths.append(list(reversed(path)))
        return paths


def _single_block_cfg() -> ControlFlowGraph:
    return ControlFlowGraph(blocks=(BasicBlock(block_id=0, exit_kind="end"),))


# ============================================================
# ===================== FUNCTIONS ============================
# ============================================================

@dataclass(frozen=True)
class Access:
    binding: str
    kind: AccessKind = "read"
    block: int = 0
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True)
class ReturnSite:
    block: int
    value: Optional[str] = None  # binding name the returned expression refers to
    aliases: bool = False        # True: shares identity with `value`; False: a copy
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True)
class Function:
    name: str
    cfg: ControlFlowGraph = field(default_factory=_single_block_cfg)
    calls: Tuple[str, ...] = ()
    accesses: Tuple[Access, ...] = ()
    returns: Tuple[ReturnSite, ...] = ()
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True)
class Registration:
    """A call that registers `handler` with a request router, e.g. http.HandleFunc."""
    call: str
    handler: str
    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class CriticalSection:
    """
    Region of `function` between acquiring and releasing `lock`.

    `enter_block` is where the lock is held from; each block in `exit_blocks`
    releases it. An exit block counts as outside the section as a whole, so
    front-ends split a block at the unlock: `mu.Lock(); x++; mu.Unlock()`
    becomes an enter block holding `x++` followed by the exit block.
    """
    lock: str
    function: str
    enter_block: int = 0
    exit_blocks: Tuple[int, ...] = ()  # empty: held until the function exits
    performs_io: bool = False
    unbounded_loop: bool = False
    size: int = 0                      # statements inside the guarded region
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()

    def guarded_blocks(self, cfg: ControlFlowGraph, dominators: Dict[int, Set[int]]) -> Set[int]:
        """
        Blocks reached only with the lock held: dominated by `enter_block`
        and not reachable from any exit block without re-entering the section.
        """
        held = {block for block, doms in dominators.items() if self.enter_block in doms}
        released: Set[int] = set()
        worklist = deque(b for b in self.exit_blocks if cfg.block(b) is not None)
        while worklist:
            node = worklist.popleft()
            if node in released:
                continue
            released.add(node)
            for succ in cfg.successors(node):
                if succ != self.enter_block and succ not in released:
                    worklist.append(succ)
        return held - released


# ============================================================
# ================ TASKS, CHANNELS, MAPS =====================
# ============================================================

@dataclass(frozen=True)
class Capture:
    binding: str
    mode: CaptureMode = "by_reference"


@dataclass(frozen=True)
class ConcurrentTask:
    name: str
    entry: str                       # function the task starts in
    captures: Tuple[Capture, ...] = ()
    replicated: bool = False         # spawned in a loop: several live copies
    location: Optional[SourceLocation] = None

    @property
    def weight(self) -> int:
        return 2 if self.replicated else 1

    def captures_by_value(self, binding: str) -> bool:
        return any(c.binding == binding and c.mode == "by_value" for c in self.captures)


def task_weight(tasks: Iterable[ConcurrentTask]) -> int:
    return sum(task.weight for task in tasks)


@dataclass(frozen=True)
class Channel:
    name: str
    capacity: ChannelCapacity = "unbounded"
    size: Optional[int] = None
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True)
class MapOperation:
    kind: MapOperationKind
    key: str
    function: str
    block: int = 0
    miss_block: Optional[int] = None  # loads only: block entered on not-found
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True)
class ConcurrentMap:
    name: str
    operations: Tuple[MapOperation, ...] = ()
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()


# ============================================================
# ===================== TIMERS & TIME ========================
# ============================================================

@dataclass(frozen=True)
class Timer:
    name: str
    function: str                        # creation scope
    kind: TimerKind = "repeating"
    block: int = 0                       # creation block
    stop_blocks: Tuple[int, ...] = ()
    deferred_stop: bool = False          # stop guaranteed on scope exit
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True)
class TimeInstant:
    name: str
    monotonic: bool = True
    derived_from: Optional[str] = None
    transformation: Optional[str] = None  # e.g. "Round(0)", "UTC()", "Unmarshal"
    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class Comparison:
    operator: ComparisonOperator
    left: str
    right: str
    structural: bool = True          # generic ==, not an instant-aware Equal()
    targets_persisted: bool = False  # result branches against a stored instant
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()


@dataclass(frozen=True)
class ElapsedComputation:
    """`time.Since(t)` / `now - t` style duration measured from `instant`."""
    instant: str
    location: Optional[SourceLocation] = None
    annotations: Tuple[Annotation, ...] = ()


# ============================================================
# ======================= IR MODEL ===========================
# ============================================================

@dataclass(frozen=True)
class IRModel:
    """
    Concurrency facts of one compilation unit. Immutable once built; the
    query methods below are deterministic functions of these fields and
    memoise derived graphs in a private cache.
    """
    unit: str
    bindings: Tuple[Binding, ...] = ()
    locks: Tuple[Lock, ...] = ()
    functions: Tuple[Function, ...] = ()
    critical_sections: Tuple[CriticalSection, ...] = ()
    tasks: Tuple[ConcurrentTask, ...] = ()
    registrations: Tuple[Registration, ...] = ()
    channels: Tuple[Channel, ...] = ()
    maps: Tuple[ConcurrentMap, ...] = ()
    timers: Tuple[Timer, ...] = ()
    instants: Tuple[TimeInstant, ...] = ()
    comparisons: Tuple[Comparison, ...] = ()
    elapsed: Tuple[ElapsedComputation, ...] = ()
    annotations: Tuple[Annotation, ...] = ()  # line-level markers with locations

    _cache: Dict[Any, Any] = field(default_factory=dict, init=False, repr=False, compare=False)

    def _memo(self, key: Any, compute: Callable[[], Any]) -> Any:
        if key not in self._cache:
            self._cache[key] = compute()
        return self._cache[key]

    # -- lookups ------------------------------------------------

    def _by_name(self, kind: str, items: Sequence[Any]) -> Dict[str, Any]:
        def build() -> Dict[str, Any]:
            index: Dict[str, Any] = {}
            for item in items:
                index.setdefault(item.name, item)
            return index

        return self._memo(("index", kind), build)

    def binding(self, name: str) -> Optional[Binding]:
        return self._by_name("binding", self.bindings).get(name)

    def lock(self, name: str) -> Optional[Lock]:
        return self._by_name("lock", self.locks).get(name)

    def function(self, name: str) -> Optional[Function]:
        return self._by_name("function", self.functions).get(name)

    def instant(self, name: str) -> Optional[TimeInstant]:
        return self._by_name("instant", self.instants).get(name)

    def unit_location(self) -> SourceLocation:
        return SourceLocation(self.unit, 0, 0)

    def locate(self, *locations: Optional[SourceLocation]) -> SourceLocation:
        for location in locations:
            if location is not None:
                return location
        return self.unit_location()

    # -- call graph & tasks -------------------------------------

    def reachable_functions(self, entry: str) -> List[str]:
        """Breadth-first closure over call edges, starting with `entry`."""

        def build() -> List[str]:
            if self.function(entry) is None:
                return []
            order = [entry]
            visited = {entry}
            queue = deque([entry])
            while queue:
                current = self.function(queue.popleft())
                if current is None:
                    continue
                for callee in current.calls:
                    if callee not in visited and self.function(callee) is not None:
                        visited.add(callee)
                        order.append(callee)
                        queue.append(callee)
            return order

        return self._memo(("reach", entry), build)

    def tasks_reaching(self, function_name: str) -> List[ConcurrentTask]:
        return [task for task in self.tasks if function_name in self.reachable_functions(task.entry)]

    def sharing_tasks(self, function_name: str, binding: str) -> List[ConcurrentTask]:
        """Tasks that reach `function_name` and see `binding` by reference."""
        return [task for task in self.tasks_reaching(function_name) if not task.captures_by_value(binding)]

    def accesses_of(self, binding: str) -> List[Tuple[Function, Access]]:
        def build() -> List[Tuple[Function, Access]]:
            sites: List[Tuple[Function, Access]] = []
            for fn in self.functions:
                for access in fn.accesses:
                    if access.binding == binding:
                        sites.append((fn, access))
            return sites

        return self._memo(("accesses", binding), build)

    def handlers(self, patterns: Sequence["re.Pattern[str]"]) -> List[Tuple[Registration, Function]]:
        found: List[Tuple[Registration, Function]] = []
        seen: Set[str] = set()
        for registration in self.registrations:
            if registration.handler in seen:
                continue
            if not any(pattern.search(registration.call) for pattern in patterns):
                continue
            fn = self.function(registration.handler)
            if fn is None:
                continue
            seen.add(registration.handler)
            found.append((registration, fn))
        return found

    # -- dominance & guards -------------------------------------

    def dominators(self, function_name: str) -> Dict[int, Set[int]]:
        fn = self.function(function_name)
        if fn is None:
            return {}
        return self._memo(("dom", function_name), fn.cfg.dominators)

    def is_reachable(self, function_name: str, block: int) -> bool:
        return block in self.dominators(function_name)

    def guarded_blocks(self, section: CriticalSection) -> Set[int]:
        fn = self.function(section.function)
        if fn is None:
            return set()
        return self._memo(
            ("guarded", section),
            lambda: section.guarded_blocks(fn.cfg, self.dominators(fn.name)),
        )

    def is_guarded(self, function_name: str, block: int, binding: str) -> bool:
        """
        True when a critical section of `function_name` whose lock guards
        `binding` is entered on every path to `block` and released on none.
        """
        for section in self.critical_sections:
            if section.function != function_name:
                continue
            lock = self.lock(section.lock)
            if lock is not None and not lock.guards(binding):
                continue
            if block in self.guarded_blocks(section):
                return True
        return False

    def accesses_in_section(self, section: CriticalSection) -> List[Access]:
        fn = self.function(section.function)
        if fn is None:
            return []
        guarded = self.guarded_blocks(section)
        return [access for access in fn.accesses if access.block in guarded]

    def unstopped_exit_paths(self, timer: Timer) -> List[List[int]]:
        fn = self.function(timer.function)
        if fn is None or timer.deferred_stop:
            return []
        return fn.cfg.paths_to_exits(timer.block, timer.stop_blocks)

    # -- time ---------------------------------------------------

    def derivation_chain(self, name: str) -> List[TimeInstant]:
        """`name` first, then each instant it was derived from."""
        chain: List[TimeInstant] = []
        visited: Set[str] = set()
        current = self.instant(name)
        while current is not None and current.name not in visited:
            visited.add(current.name)
            chain.append(current)
            current = self.instant(current.derived_from) if current.derived_from else None
        return chain

    def stripping_transformation(self, name: str) -> Optional[str]:
        """The transformation that first dropped the monotonic reading, if known."""
        chain = self.derivation_chain(name)
        for child, parent in zip(chain, chain[1:]):
            if not child.monotonic and parent.monotonic:
                return child.transformation
        if chain and not chain[-1].monotonic:
            return chain[-1].transformation
        return None


@dataclass(frozen=True)
class ParseFailure:
    """The IR builder could not produce an IRModel for `unit`."""
    unit: str
    reason: str
    location: Optional[SourceLocation] = None


IRBuildResult = Union[IRModel, ParseFailure]


# ============================================================
# ================= CANDIDATES & DIAGNOSTICS =================
# ============================================================

@dataclass(frozen=True)
class Candidate:
    """A detector's raw match, before suppression and overrides."""
    rule_id: str
    location: SourceLocation
    severity: str
    confidence: str
    message: str
    suggested_fix: Optional[str] = None
    annotations: Tuple[Annotation, ...] = ()
    extras: Dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class Diagnostic:
    unit: str
    rule_id: str
    severity: str
    confidence: str
    location: SourceLocation
    message: str
    suppressed: bool = False
    justification: Optional[str] = None
    suggested_fix: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict, hash=False)

    def sort_key(self) -> Tuple[Any, ...]:
        return (
            self.location.file,
            self.location.line,
            self.location.column,
            self.rule_id,
            self.unit,
            self.message,
        )

    @property
    def is_engine_diagnostic(self) -> bool:
        return self.rule_id in ENGINE_RULE_IDS


# ============================================================
# ====================== DETECTORS ===========================
# ============================================================


class ConfigurationError(Exception):
    """Raised when rule configuration cannot produce a meaningful run."""


@dataclass(frozen=True)
class ThresholdSpec:
    default: Any
    minimum: Optional[int] = None
    maximum: Optional[int] = None
    validator: Optional[Callable[[str, Any], Any]] = None

    def validate(self, name: str, value: Any) -> Any:
        if self.validator is not None:
            return self.validator(name, value)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"threshold '{name}' must be an integer, got {value!r}")
        if self.minimum is not None and value < self.minimum:
            raise ConfigurationError(f"threshold '{name}'={value} is below minimum {self.minimum}")
        if self.maximum is not None and value > self.maximum:
            raise ConfigurationError(f"threshold '{name}'={value} is above maximum {self.maximum}")
        return value


def _validate_patterns(name: str, value: Any) -> Tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"threshold '{name}' must be a list of regular expressions")
    patterns: List[str] = []
    for raw in value:
        if not isinstance(raw, str):
            raise ConfigurationError(f"threshold '{name}' entries must be strings, got {raw!r}")
        try:
            re.compile(raw)
        except re.error as exc:
            raise ConfigurationError(f"threshold '{name}' has invalid pattern {raw!r}: {exc}") from exc
        patterns.append(raw)
    return tuple(patterns)


@dataclass(frozen=True)
class RuleSettings:
    """Effective configuration of one rule for a run."""
    rule_id: str
    enabled: bool = True
    severity: Optional[str] = None    # None keeps the detector's default
    confidence: Optional[str] = None
    thresholds: Dict[str, Any] = field(default_factory=dict)

    def threshold(self, name: str) -> Any:
        return self.thresholds[name]


class Detector:
    """
    One hazard rule. Subclasses are stateless: `evaluate` reads the IR and the
    rule's settings and returns candidates, nothing else.
    """
    rule_id: str = ""
    title: str = ""
    default_severity: str = "medium"
    default_confidence: str = "high"
    intent_markers: Tuple[str, ...] = ()
    thresholds: Dict[str, ThresholdSpec] = {}
    suggested_fix: Optional[str] = None

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        raise NotImplementedError

    def default_settings(self) -> RuleSettings:
        return RuleSettings(
            rule_id=self.rule_id,
            thresholds={name: spec.default for name, spec in self.thresholds.items()},
        )

    def candidate(
        self,
        location: SourceLocation,
        message: str,
        *,
        annotations: Tuple[Annotation, ...] = (),
        extras: Optional[Dict[str, Any]] = None,
    ) -> Candidate:
        return Candidate(
            rule_id=self.rule_id,
            location=location,
            severity=self.default_severity,
            confidence=self.default_confidence,
            message=message,
            suggested_fix=self.suggested_fix,
            annotations=annotations,
            extras=dict(extras or {}),
        )


DEFAULT_HANDLER_PATTERNS: Tuple[str, ...] = (
    r"(^|\.)HandleFunc$",
    r"(^|\.)Handle$",
    r"(^|\.)(GET|POST|PUT|PATCH|DELETE|HEAD|OPTIONS|Any)$",
    r"(^|\.)(route|add_url_rule|add_route|add_api_route)$",
)


class HandlerSafetyDetector(Detector):
    rule_id = "RC.1"
    title = "request handler touches shared state without a lock"
    default_severity = "high"
    default_confidence = "high"
    thresholds = {
        "handler_patterns": ThresholdSpec(default=DEFAULT_HANDLER_PATTERNS, validator=_validate_patterns),
    }
    suggested_fix = "Guard the shared state with a mutex held for the whole access, or make it atomic."

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        patterns = [re.compile(p) for p in settings.threshold("handler_patterns")]
        handlers = ir.handlers(patterns)
        if not handlers:
            return []

        handler_reach = {fn.name: set(ir.reachable_functions(fn.name)) for _, fn in handlers}
        candidates: List[Candidate] = []
        for registration, handler in handlers:
            for fn_name in ir.reachable_functions(handler.name):
                fn = ir.function(fn_name)
                if fn is None:
                    continue
                for access in fn.accesses:
                    binding = ir.binding(access.binding)
                    if binding is None or not binding.is_shared_candidate:
                        continue
                    if not ir.is_reachable(fn.name, access.block):
                        continue
                    sharers = self._sharers(ir, handler.name, handler_reach, binding.name)
                    if not sharers:
                        continue
                    if ir.is_guarded(fn.name, access.block, binding.name):
                        continue
                    via = "" if fn.name == handler.name else f" (via '{fn.name}')"
                    candidates.append(
                        self.candidate(
                            ir.locate(access.location, fn.location),
                            f"handler '{handler.name}' registered with {registration.call}{via} "
                            f"{'writes' if access.kind == 'write' else 'reads'} '{binding.name}' "
                            f"shared with {', '.join(sharers)} without holding a lock",
                            annotations=access.annotations,
                            extras={"handler": handler.name, "binding": binding.name, "sharers": sharers},
                        )
                    )
        return candidates

    def _sharers(
        self,
        ir: IRModel,
        handler: str,
        handler_reach: Dict[str, Set[str]],
        binding: str,
    ) -> List[str]:
        sharers: Set[str] = set()
        for fn, _ in ir.accesses_of(binding):
            for other, reach in handler_reach.items():
                if other != handler and fn.name in reach:
                    sharers.add(f"handler '{other}'")
            for task in ir.sharing_tasks(fn.name, binding):
                sharers.add(f"task '{task.name}'")
        return sorted(sharers)


class UnguardedAccessDetector(Detector):
    rule_id = "RC.2"
    title = "unguarded read/write of state shared between tasks"
    default_severity = "high"
    default_confidence = "high"
    thresholds = {"min_tasks": ThresholdSpec(default=2, minimum=2, maximum=1000)}
    suggested_fix = "Hold the lock that protects this binding around the access, or use an atomic type."

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        min_tasks = settings.threshold("min_tasks")
        candidates: List[Candidate] = []
        for binding in ir.bindings:
            if not binding.is_shared_candidate:
                continue

            sharing: Dict[str, ConcurrentTask] = {}
            task_sites: List[Tuple[Function, Access]] = []
            for fn, access in ir.accesses_of(binding.name):
                if not ir.is_reachable(fn.name, access.block):
                    continue
                tasks = ir.sharing_tasks(fn.name, binding.name)
                if not tasks:
                    continue
                for task in tasks:
                    sharing[task.name] = task
                task_sites.append((fn, access))

            if task_weight(sharing.values()) < min_tasks:
                continue

            task_names = sorted(sharing)
            for fn, access in task_sites:
                if ir.is_guarded(fn.name, access.block, binding.name):
                    continue
                verb = "written" if access.kind == "write" else "read"
                candidates.append(
                    self.candidate(
                        ir.locate(access.location, fn.location),
                        f"'{binding.name}' is {verb} in '{fn.name}' without a guarding lock while "
                        f"shared by tasks {', '.join(task_names)}",
                        annotations=access.annotations,
                        extras={"binding": binding.name, "access": access.kind, "tasks": task_names},
                    )
                )
        return candidates


class LeakedReferenceDetector(Detector):
    rule_id = "RC.3"
    title = "accessor leaks a reference to lock-protected state"
    default_severity = "high"
    default_confidence = "high"
    suggested_fix = "Return a copy (or an immutable value type) instead of the protected structure."

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        candidates: List[Candidate] = []
        reported: Set[Tuple[str, int]] = set()
        for section in ir.critical_sections:
            fn = ir.function(section.function)
            if fn is None:
                continue
            lock = ir.lock(section.lock)
            guarded = ir.guarded_blocks(section)
            for index, ret in enumerate(fn.returns):
                if ret.value is None or not ret.aliases:
                    continue
                if (fn.name, index) in reported or ret.block not in guarded:
                    continue
                binding = ir.binding(ret.value)
                if binding is None or binding.category != "compound":
                    continue
                if lock is not None and not lock.guards(binding.name):
                    continue
                reported.add((fn.name, index))
                candidates.append(
                    self.candidate(
                        ir.locate(ret.location, fn.location),
                        f"'{fn.name}' returns a reference to '{binding.name}' protected by "
                        f"'{section.lock}'; callers use it after the lock is released",
                        annotations=ret.annotations,
                        extras={"function": fn.name, "binding": binding.name, "lock": section.lock},
                    )
                )
        return candidates


class LoadThenStoreDetector(Detector):
    rule_id = "RC.4"
    title = "load-miss-then-store on a concurrent map"
    default_severity = "high"
    default_confidence = "medium"
    intent_markers = ("benign",)
    thresholds = {"min_tasks": ThresholdSpec(default=2, minimum=2, maximum=1000)}
    suggested_fix = "Use LoadOrStore (or LoadAndDelete) so the check and the update are one atomic step."

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        min_tasks = settings.threshold("min_tasks")
        candidates: List[Candidate] = []
        for cmap in ir.maps:
            by_function: Dict[str, List[MapOperation]] = {}
            for op in cmap.operations:
                by_function.setdefault(op.function, []).append(op)

            for fn_name, ops in by_function.items():
                tasks = ir.tasks_reaching(fn_name)
                if task_weight(tasks) < min_tasks:
                    continue
                atomic_keys = {op.key for op in ops if op.kind in ("load_or_store", "load_and_delete")}
                misses = [op for op in ops if op.kind == "load" and op.miss_block is not None]
                dom = ir.dominators(fn_name)
                for store in ops:
                    if store.kind != "store" or store.key in atomic_keys:
                        continue
                    store_doms = dom.get(store.block)
                    if store_doms is None:
                        continue
                    load = next(
                        (m for m in misses if m.key == store.key and m.miss_block in store_doms),
                        None,
                    )
                    if load is None:
                        continue
                    candidates.append(
                        self.candidate(
                            ir.locate(store.location, cmap.location),
                            f"'{cmap.name}'.Store({store.key}) in '{fn_name}' runs after a missed "
                            f"Load({store.key}); {len(tasks)} task(s) can interleave between them",
                            annotations=store.annotations,
                            extras={
                                "map": cmap.name,
                                "key": store.key,
                                "load_location": str(ir.locate(load.location)),
                                "tasks": sorted(task.name for task in tasks),
                            },
                        )
                    )
        return candidates


class ZeroCapacityQueueDetector(Detector):
    rule_id = "Sc.1"
    title = "zero-capacity channel"
    default_severity = "low"
    default_confidence = "low"
    intent_markers = ("intentional",)
    suggested_fix = "Give the channel a buffer sized to the expected burst, or mark the rendezvous intentional."

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        return [
            self.candidate(
                ir.locate(channel.location),
                f"channel '{channel.name}' has zero capacity; every send blocks until a receiver is ready",
                annotations=channel.annotations,
                extras={"channel": channel.name},
            )
            for channel in ir.channels
            if channel.capacity == "zero" or (channel.capacity == "bounded" and channel.size == 0)
        ]


class ReadWriteLockJustificationDetector(Detector):
    rule_id = "Sc.2"
    title = "read/write lock around a short critical section"
    default_severity = "medium"
    default_confidence = "medium"
    intent_markers = ("benchmarked",)
    thresholds = {"short_section_size": ThresholdSpec(default=16, minimum=1, maximum=10000)}
    suggested_fix = "Use a plain mutex unless a benchmark shows the read/write lock wins."

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        limit = settings.threshold("short_section_size")
        candidates: List[Candidate] = []
        for section in ir.critical_sections:
            lock = ir.lock(section.lock)
            if lock is None or lock.kind != "read_write":
                continue
            if section.performs_io or section.unbounded_loop or section.size >= limit:
                continue
            candidates.append(
                self.candidate(
                    ir.locate(section.location, lock.location),
                    f"read/write lock '{lock.name}' guards a short section in '{section.function}' "
                    f"({section.size} statements, no I/O); its bookkeeping likely costs more than it saves",
                    annotations=section.annotations,
                    extras={"lock": lock.name, "function": section.function, "size": section.size},
                )
            )
        return candidates


class TimerLeakDetector(Detector):
    rule_id = "Tm.1"
    title = "repeating timer not stopped on every exit"
    default_severity = "high"
    default_confidence = "high"
    thresholds = {"max_reported_paths": ThresholdSpec(default=3, minimum=1, maximum=100)}
    suggested_fix = "Stop the timer on every exit path, e.g. with a deferred Stop() right after creation."

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        limit = settings.threshold("max_reported_paths")
        candidates: List[Candidate] = []
        for timer in ir.timers:
            if timer.kind != "repeating":
                continue
            fn = ir.function(timer.function)
            if fn is None:
                continue
            paths = ir.unstopped_exit_paths(timer)
            if not paths:
                continue

            described: List[Dict[str, Any]] = []
            for path in paths:
                exit_block = fn.cfg.blocks[path[-1]]
                described.append(
                    {
                        "exit_kind": fn.cfg.exit_kind(path[-1]),
                        "location": str(ir.locate(exit_block.location, fn.location)),
                        "blocks": path,
                    }
                )
            shown = described[:limit]
            summary = "; ".join(
                f"{_exit_kind_text(item['exit_kind'])} at {item['location']} "
                f"(blocks {' -> '.join(str(b) for b in item['blocks'])})"
                for item in shown
            )
            if len(described) > limit:
                summary += f"; and {len(described) - limit} more"
            candidates.append(
                self.candidate(
                    ir.locate(timer.location, fn.location),
                    f"repeating timer '{timer.name}' in '{fn.name}' is not stopped on "
                    f"{len(described)} exit path(s): {summary}",
                    annotations=timer.annotations,
                    extras={"timer": timer.name, "function": fn.name, "exit_paths": described},
                )
            )
        return candidates


class RawInstantEqualityDetector(Detector):
    rule_id = "Tm.2"
    title = "time instants compared with structural equality"
    default_severity = "medium"
    default_confidence = "high"
    suggested_fix = "Compare instants with the instant-aware Equal() operation."

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        candidates: List[Candidate] = []
        for cmp in ir.comparisons:
            if cmp.operator != "equals" or not cmp.structural:
                continue
            if ir.instant(cmp.left) is None or ir.instant(cmp.right) is None:
                continue
            candidates.append(
                self.candidate(
                    ir.locate(cmp.location),
                    f"'{cmp.left} == {cmp.right}' compares time instants structurally; location "
                    f"and monotonic readings make equal instants compare unequal",
                    annotations=cmp.annotations,
                    extras={"left": cmp.left, "right": cmp.right},
                )
            )
        return candidates


class ElapsedSignDetector(Detector):
    rule_id = "Tm.3"
    title = "elapsed duration measured from a wall-clock-only instant"
    default_severity = "high"
    default_confidence = "high"
    suggested_fix = "Measure elapsed time from an instant that still carries its monotonic reading."

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        candidates: List[Candidate] = []
        for elapsed in ir.elapsed:
            instant = ir.instant(elapsed.instant)
            if instant is None or instant.monotonic:
                continue
            cause = ir.stripping_transformation(instant.name)
            reason = f" (monotonic reading dropped by {cause})" if cause else ""
            candidates.append(
                self.candidate(
                    ir.locate(elapsed.location, instant.location),
                    f"elapsed time is computed from '{instant.name}', which has no monotonic "
                    f"reading{reason}; a wall-clock step can make the duration negative",
                    annotations=elapsed.annotations,
                    extras={
                        "instant": instant.name,
                        "derivation": [step.name for step in ir.derivation_chain(instant.name)],
                        "stripped_by": cause,
                    },
                )
            )
        return candidates


class MixedMonotonicOrderingDetector(Detector):
    rule_id = "Tm.4"
    title = "ordering comparison mixes monotonic and wall-clock instants"
    default_severity = "medium"
    default_confidence = "medium"
    suggested_fix = "Strip the monotonic reading from both operands (e.g. Round(0)) before comparing."

    def evaluate(self, ir: IRModel, settings: RuleSettings) -> List[Candidate]:
        candidates: List[Candidate] = []
        for cmp in ir.comparisons:
            if cmp.operator not in ("before", "after") or not cmp.targets_persisted:
                continue
            left = ir.instant(cmp.left)
            right = ir.instant(cmp.right)
            if left is None or right is None or left.monotonic == right.monotonic:
                continue
            mono, wall = (left, right) if left.monotonic else (right, left)
            candidates.append(
                self.candidate(
                    ir.locate(cmp.location),
                    f"'{cmp.left}' {cmp.operator} '{cmp.right}' is checked against a stored instant, "
                    f"but only '{mono.name}' carries a monotonic reading ('{wall.name}' does not)",
                    annotations=cmp.annotations,
                    extras={"monotonic": mono.name, "wall_clock": wall.name, "operator": cmp.operator},
                )
            )
        return candidates


# Static table; a catalog selects from it but never changes it.
DETECTORS: Tuple[Detector, ...] = (
    HandlerSafetyDetector(),
    UnguardedAccessDetector(),
    LeakedReferenceDetector(),
    LoadThenStoreDetector(),
    ZeroCapacityQueueDetector(),
    ReadWriteLockJustificationDetector(),
    TimerLeakDetector(),
    RawInstantEqualityDetector(),
    ElapsedSignDetector(),
    MixedMonotonicOrderingDetector(),
)

_DETECTORS_BY_ID: Dict[str, Detector] = {detector.rule_id: detector for detector in DETECTORS}


def detector_for(rule_id: str) -> Detector:
    try:
        return _DETECTORS_BY_ID[rule_id]
    except KeyError:
        raise ConfigurationError(f"unknown rule id '{rule_id}'") from None


# ============================================================
# ==================== RULE CATALOG ==========================
# ============================================================

_RULE_ENTRY_KEYS = {"enabled", "severity", "confidence", "thresholds"}
_ENGINE_KEYS = {"workers", "unit_timeout", "partial_results"}
_CONFIG_KEYS = {"engine", "rules"}


def _rule_settings_from_mapping(detector: Detector, raw: Any) -> RuleSettings:
    base = detector.default_settings()
    if raw is None:
        return base
    if isinstance(raw, bool):  # "Sc.1: false" shorthand
        return replace(base, enabled=raw)
    if not isinstance(raw, dict):
        raise ConfigurationError(f"settings for rule '{detector.rule_id}' must be a mapping")

    unknown = sorted(str(key) for key in raw if key not in _RULE_ENTRY_KEYS)
    if unknown:
        raise ConfigurationError(
            f"rule '{detector.rule_id}' has unknown setting(s): {', '.join(unknown)}"
        )

    enabled = raw.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigurationError(f"rule '{detector.rule_id}': 'enabled' must be true or false")

    severity = raw.get("severity")
    if severity is not None and severity not in SEVERITY_LEVELS:
        raise ConfigurationError(
            f"rule '{detector.rule_id}': severity {severity!r} is not one of {', '.join(SEVERITY_LEVELS)}"
        )
    confidence = raw.get("confidence")
    if confidence is not None and confidence not in CONFIDENCE_LEVELS:
        raise ConfigurationError(
            f"rule '{detector.rule_id}': confidence {confidence!r} is not one of {', '.join(CONFIDENCE_LEVELS)}"
        )

    raw_thresholds = raw.get("thresholds") or {}
    if not isinstance(raw_thresholds, dict):
        raise ConfigurationError(f"rule '{detector.rule_id}': 'thresholds' must be a mapping")
    thresholds = dict(base.thresholds)
    for name, value in raw_thresholds.items():
        spec = detector.thresholds.get(name)
        if spec is None:
            raise ConfigurationError(f"rule '{detector.rule_id}' has no threshold named '{name}'")
        thresholds[name] = spec.validate(f"{detector.rule_id}.{name}", value)

    return RuleSettings(
        rule_id=detector.rule_id,
        enabled=enabled,
        severity=severity,
        confidence=confidence,
        thresholds=thresholds,
    )


@dataclass(frozen=True)
class RuleCatalog:
    """
    Effective settings for every known rule, in catalog order. A value, not a
    registry: each engine run receives one explicitly.
    """
    settings: Tuple[RuleSettings, ...]

    @classmethod
    def default(cls) -> "RuleCatalog":
        return cls(settings=tuple(detector.default_settings() for detector in DETECTORS))

    @classmethod
    def from_mapping(cls, rules: Optional[Dict[str, Any]]) -> "RuleCatalog":
        """
        Build a catalog from the `rules:` section of a config document.
        Absent rules keep their defaults; unknown ids fail the whole run.
        """
        if rules is None:
            return cls.default()
        if not isinstance(rules, dict):
            raise ConfigurationError("'rules' must be a mapping of rule id to settings")
        unknown = sorted(str(rule_id) for rule_id in rules if rule_id not in _DETECTORS_BY_ID)
        if unknown:
            raise ConfigurationError(f"unknown rule id(s): {', '.join(unknown)}")
        return cls(
            settings=tuple(
                _rule_settings_from_mapping(detector, rules.get(detector.rule_id))
                for detector in DETECTORS
            )
        )

    def get(self, rule_id: str) -> RuleSettings:
        for settings in self.settings:
            if settings.rule_id == rule_id:
                return settings
        raise ConfigurationError(f"unknown rule id '{rule_id}'")

    def enabled(self) -> List[Tuple[Detector, RuleSettings]]:
        return [
            (detector_for(settings.rule_id), settings)
            for settings in self.settings
            if settings.enabled
        ]


@dataclass(frozen=True)
class EngineSettings:
    """
    Run-wide engine knobs.

    `unit_timeout` is checked between detectors: a unit that overruns it
    skips its remaining rules. A detector that never returns is not
    interrupted, so it produces no `timeout` diagnostic.
    """
    workers: int = 4
    unit_timeout: Optional[float] = None  # seconds per unit
    partial_results: bool = False         # engine diagnostics do not fail the run

    @classmethod
    def from_mapping(cls, raw: Optional[Dict[str, Any]]) -> "EngineSettings":
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ConfigurationError("'engine' must be a mapping")
        unknown = sorted(str(key) for key in raw if key not in _ENGINE_KEYS)
        if unknown:
            raise ConfigurationError(f"unknown engine setting(s): {', '.join(unknown)}")

        workers = raw.get("workers", 4)
        if isinstance(workers, bool) or not isinstance(workers, int) or not 1 <= workers <= 256:
            raise ConfigurationError(f"engine.workers must be an integer in 1..256, got {workers!r}")

        unit_timeout = raw.get("unit_timeout")
        if unit_timeout is not None:
            if isinstance(unit_timeout, bool) or not isinstance(unit_timeout, (int, float)) or unit_timeout <= 0:
                raise ConfigurationError(
                    f"engine.unit_timeout must be a positive number of seconds, got {unit_timeout!r}"
                )
            unit_timeout = float(unit_timeout)

        partial_results = raw.get("partial_results", False)
        if not isinstance(partial_results, bool):
            raise ConfigurationError("engine.partial_results must be true or false")

        return cls(workers=workers, unit_timeout=unit_timeout, partial_results=partial_results)


def parse_configuration(document: Any) -> Tuple[RuleCatalog, EngineSettings]:
    if document is None:
        return RuleCatalog.default(), EngineSettings()
    if not isinstance(document, dict):
        raise ConfigurationError("configuration document must be a mapping")
    unknown = sorted(str(key) for key in document if key not in _CONFIG_KEYS)
    if unknown:
        raise ConfigurationError(f"unknown configuration section(s): {', '.join(unknown)}")
    return RuleCatalog.from_mapping(document.get("rules")), EngineSettings.from_mapping(document.get("engine"))


def load_configuration(path: str) -> Tuple[RuleCatalog, EngineSettings]:
    """
    Read a YAML configuration document. Any problem is a ConfigurationError:
    a run with a config it cannot honour must not start.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except FileNotFoundError:
        raise ConfigurationError(f"configuration file not found: {path}") from None
    except OSError as exc:
        raise ConfigurationError(f"could not read configuration file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"configuration file {path} is not valid YAML: {exc}") from exc
    return parse_configuration(document)


# ============================================================
# ==================== HAZARD ENGINE =========================
# ============================================================

@dataclass(frozen=True)
class AnalysisResult:
    diagnostics: Tuple[Diagnostic, ...]
    outcome: RunOutcome

    @property
    def actionable(self) -> List[Diagnostic]:
        return [diag for diag in self.diagnostics if not diag.suppressed]

    @property
    def suppressed(self) -> List[Diagnostic]:
        return [diag for diag in self.diagnostics if diag.suppressed]


def compute_outcome(diagnostics: Iterable[Diagnostic], *, partial_results: bool = False) -> RunOutcome:
    diagnostics = list(diagnostics)
    if not partial_results and any(diag.is_engine_diagnostic for diag in diagnostics):
        return "engine_error"
    if any(not diag.suppressed for diag in diagnostics):
        return "findings"
    return "clean"


def find_suppression(ir: IRModel, detector: Detector, candidate: Candidate) -> Optional[Annotation]:
    """
    Node annotations first, then unit-level ones: those on the same line, and
    location-less ones that cover the whole unit.
    """
    for annotation in candidate.annotations:
        if annotation.matches(candidate.rule_id, detector.intent_markers):
            return annotation
    for annotation in ir.annotations:
        where = annotation.location
        if where is not None and (where.file, where.line) != (candidate.location.file, candidate.location.line):
            continue
        if annotation.matches(candidate.rule_id, detector.intent_markers):
            return annotation
    return None


class IRBuilder:
    """Front-end contract: turn one unit into an IRModel, or explain why not."""

    def build(self, unit: str) -> IRBuildResult:
        raise NotImplementedError


def build_safely(builder: IRBuilder, unit: str) -> IRBuildResult:
    try:
        return builder.build(unit)
    except Exception as exc:  # a crashing front-end is an ingest failure, not a crash
        sys.stderr.write(f"[vigil] IR builder failed on '{unit}': {exc!r}\n")
        return ParseFailure(unit=str(unit), reason=f"{type(exc).__name__}: {exc}")


class HazardEngine:
    """
    The HazardEngine will:
    - take an explicit RuleCatalog and EngineSettings
    - run every enabled detector over every IR model (units in parallel)
    - turn candidates into diagnostics, marking suppressed ones
    - contain ingest/detector/timeout failures as diagnostics
    - return a stably ordered AnalysisResult
    """

    def __init__(
        self,
        catalog: Optional[RuleCatalog] = None,
        settings: Optional[EngineSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.catalog = catalog or RuleCatalog.default()
        self.settings = settings or EngineSettings()
        self._clock = clock

    def analyze(
        self,
        units: Iterable[IRBuildResult],
        *,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> AnalysisResult:
        """
        Analyse every unit. `deadline` is a value of the engine clock
        (time.monotonic by default); `cancel` may be set from any thread.
        """
        unit_list = list(units)
        rules = self.catalog.enabled()

        def run(unit: IRBuildResult) -> List[Diagnostic]:
            return self.analyze_unit(unit, rules=rules, cancel=cancel, deadline=deadline)

        if self.settings.workers > 1 and len(unit_list) > 1:
            workers = min(self.settings.workers, len(unit_list))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="vigil") as pool:
                batches = list(pool.map(run, unit_list))
        else:
            batches = [run(unit) for unit in unit_list]

        diagnostics = sorted(
            (diag for batch in batches for diag in batch),
            key=Diagnostic.sort_key,
        )
        return AnalysisResult(
            diagnostics=tuple(diagnostics),
            outcome=compute_outcome(diagnostics, partial_results=self.settings.partial_results),
        )

    def analyze_sources(
        self,
        builder: IRBuilder,
        sources: Iterable[str],
        *,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> AnalysisResult:
        return self.analyze(
            [build_safely(builder, source) for source in sources],
            cancel=cancel,
            deadline=deadline,
        )

    def analyze_unit(
        self,
        unit: IRBuildResult,
        *,
        rules: Optional[List[Tuple[Detector, RuleSettings]]] = None,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> List[Diagnostic]:
        if isinstance(unit, ParseFailure):
            sys.stderr.write(f"[vigil] Could not build IR for '{unit.unit}': {unit.reason}\n")
            return [
                self._engine_diagnostic(
                    unit.unit,
                    INGEST_RULE,
                    "error",
                    f"could not build IR: {unit.reason}",
                    location=unit.location,
                )
            ]

        if rules is None:
            rules = self.catalog.enabled()

        diagnostics: List[Diagnostic] = []
        started = self._clock()
        for index, (detector, settings) in enumerate(rules):
            if self._stopped(cancel, deadline):
                skipped = [pending.rule_id for pending, _ in rules[index:]]
                sys.stderr.write(
                    f"[vigil] Analysis of '{unit.unit}' cancelled; skipped {', '.join(skipped)}.\n"
                )
                diagnostics.append(
                    self._engine_diagnostic(
                        unit.unit,
                        PARTIAL_RULE,
                        "info",
                        f"analysis cancelled; rules not run: {', '.join(skipped)}",
                        extras={"skipped_rules": skipped},
                    )
                )
                break

            diagnostics.extend(self._run_detector(unit, detector, settings))

            budget = self.settings.unit_timeout
            elapsed = self._clock() - started
            if budget is not None and elapsed > budget:
                skipped = [pending.rule_id for pending, _ in rules[index + 1:]]
                sys.stderr.write(
                    f"[vigil] Analysis of '{unit.unit}' exceeded {budget:g}s after rule "
                    f"'{detector.rule_id}'.\n"
                )
                diagnostics.append(
                    self._engine_diagnostic(
                        unit.unit,
                        TIMEOUT_RULE,
                        "error",
                        f"analysis exceeded its {budget:g}s budget after rule {detector.rule_id}"
                        + (f"; rules not run: {', '.join(skipped)}" if skipped else ""),
                        extras={"elapsed": round(elapsed, 3), "skipped_rules": skipped},
                    )
                )
                break

        return diagnostics

    def _stopped(self, cancel: Optional[threading.Event], deadline: Optional[float]) -> bool:
        if cancel is not None and cancel.is_set():
            return True
        return deadline is not None and self._clock() >= deadline

    def _run_detector(self, ir: IRModel, detector: Detector, settings: RuleSettings) -> List[Diagnostic]:
        try:
            candidates = detector.evaluate(ir, settings)
        except Exception as exc:  # isolated to this (unit, rule) pair
            sys.stderr.write(
                f"[vigil] Rule '{detector.rule_id}' failed on '{ir.unit}': {exc!r}\n"
            )
            return [
                self._engine_diagnostic(
                    ir.unit,
                    INTERNAL_RULE,
                    "error",
                    f"rule {detector.rule_id} failed: {type(exc).__name__}: {exc}",
                    extras={"rule": detector.rule_id},
                )
            ]
        return [self._to_diagnostic(ir, detector, settings, candidate) for candidate in candidates]

    def _to_diagnostic(
        self,
        ir: IRModel,
        detector: Detector,
        settings: RuleSettings,
        candidate: Candidate,
    ) -> Diagnostic:
        suppression = find_suppression(ir, detector, candidate)
        return Diagnostic(
            unit=ir.unit,
            rule_id=candidate.rule_id,
            severity=settings.severity or candidate.severity,
            confidence=settings.confidence or candidate.confidence,
            location=candidate.location,
            message=candidate.message,
            suppressed=suppression is not None,
            justification=suppression.justification if suppression is not None else None,
            suggested_fix=candidate.suggested_fix,
            extras=dict(candidate.extras),
        )

    def _engine_diagnostic(
        self,
        unit: str,
        rule_id: str,
        severity: str,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> Diagnostic:
        return Diagnostic(
            unit=unit,
            rule_id=rule_id,
            severity=severity,
            confidence="high",
            location=location or SourceLocation(unit, 0, 0),
            message=message,
            extras=dict(extras or {}),
        )


# ============================================================
# ================= IR DOCUMENT BUILDER ======================
# ============================================================

class IRDocumentError(ValueError):
    """Raised when an IR document does not have the expected shape."""


_IR_DOCUMENT_KEYS = (
    "unit",
    "bindings",
    "locks",
    "functions",
    "critical_sections",
    "tasks",
    "registrations",
    "channels",
    "maps",
    "timers",
    "instants",
    "comparisons",
    "elapsed",
    "annotations",
)

_LOCATION_PATTERN = re.compile(r"^(?P<file>.+?):(?P<line>\d+)(?::(?P<column>\d+))?$")

_WARNED_MESSAGES: Set[str] = set()


def _warn_once(message: str) -> None:
    if message in _WARNED_MESSAGES:
        return
    sys.stderr.write(f"[vigil] {message}\n")
    _WARNED_MESSAGES.add(message)


class _DocumentReader:
    """Field accessors that turn loosely-typed YAML values into IR fields."""

    def __init__(self, unit: str) -> None:
        self.unit = unit

    def items(self, raw: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
        value = raw.get(key)
        if value is None:
            return []
        if not isinstance(value, list):
            raise IRDocumentError(f"'{key}' must be a list")
        for index, item in enumerate(value):
            if not isinstance(item, dict):
                raise IRDocumentError(f"'{key}[{index}]' must be a mapping")
        return value

    def text(self, raw: Dict[str, Any], key: str, default: Optional[str] = None) -> str:
        value = raw.get(key, default)
        if value is None:
            raise IRDocumentError(f"missing required field '{key}'")
        return str(value)

    def optional_text(self, raw: Dict[str, Any], key: str) -> Optional[str]:
        value = raw.get(key)
        return None if value is None else str(value)

    def flag(self, raw: Dict[str, Any], key: str, default: bool = False) -> bool:
        value = raw.get(key, default)
        if not isinstance(value, bool):
            raise IRDocumentError(f"field '{key}' must be true or false, got {value!r}")
        return value

    def integer(self, raw: Dict[str, Any], key: str, default: int = 0) -> int:
        value = raw.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int):
            raise IRDocumentError(f"field '{key}' must be an integer, got {value!r}")
        return value

    def optional_integer(self, raw: Dict[str, Any], key: str) -> Optional[int]:
        if raw.get(key) is None:
            return None
        return self.integer(raw, key)

    def integers(self, raw: Dict[str, Any], key: str) -> Tuple[int, ...]:
        value = raw.get(key) or []
        if not isinstance(value, list):
            raise IRDocumentError(f"field '{key}' must be a list of integers")
        for item in value:
            if isinstance(item, bool) or not isinstance(item, int):
                raise IRDocumentError(f"field '{key}' must be a list of integers, got {item!r}")
        return tuple(value)

    def names(self, raw: Dict[str, Any], key: str) -> Tuple[str, ...]:
        value = raw.get(key) or []
        if not isinstance(value, list):
            raise IRDocumentError(f"field '{key}' must be a list of names")
        return tuple(str(item) for item in value)

    def choice(self, raw: Dict[str, Any], key: str, allowed: Sequence[str], default: Optional[str]) -> Any:
        value = raw.get(key, default)
        if value is None and default is None:
            return None
        if value not in allowed:
            raise IRDocumentError(f"field '{key}' must be one of {', '.join(allowed)}, got {value!r}")
        return value

    def location(self, raw: Dict[str, Any], key: str = "location") -> Optional[SourceLocation]:
        value = raw.get(key)
        if value is None:
            return None
        if isinstance(value, bool):
            raise IRDocumentError(f"invalid location {value!r}")
        if isinstance(value, int):
            return SourceLocation(self.unit, value, 0)
        if isinstance(value, dict):
            return SourceLocation(
                file=str(value.get("file", self.unit)),
                line=self.integer(value, "line"),
                column=self.integer(value, "column", 0),
            )
        if isinstance(value, str):
            match = _LOCATION_PATTERN.match(value.strip())
            if match:
                return SourceLocation(
                    file=match.group("file"),
                    line=int(match.group("line")),
                    column=int(match.group("column") or 0),
                )
            if value.strip().isdigit():
                return SourceLocation(self.unit, int(value.strip()), 0)
        raise IRDocumentError(f"invalid location {value!r}; expected 'file:line[:column]'")

    def annotations(self, raw: Dict[str, Any]) -> Tuple[Annotation, ...]:
        return tuple(self.annotation(item) for item in self.items(raw, "annotations"))

    def annotation(self, raw: Dict[str, Any]) -> Annotation:
        rule_id = raw.get("rule", raw.get("rule_id"))
        marker = raw.get("marker")
        if rule_id is None and marker is None:
            raise IRDocumentError("annotation needs a 'rule' or a 'marker'")
        return Annotation(
            rule_id=None if rule_id is None else str(rule_id),
            marker=None if marker is None else str(marker),
            justification=str(raw.get("justification", "")),
            location=self.location(raw),
        )

    # -- entities -----------------------------------------------

    def binding(self, raw: Dict[str, Any]) -> Binding:
        return Binding(
            name=self.text(raw, "name"),
            mutable=self.flag(raw, "mutable", True),
            category=self.choice(raw, "category", ("primitive", "compound", "atomic"), "primitive"),
            scope=self.text(raw, "scope", "unit"),
            location=self.location(raw),
            annotations=self.annotations(raw),
        )

    def lock(self, raw: Dict[str, Any]) -> Lock:
        return Lock(
            name=self.text(raw, "name"),
            kind=self.choice(raw, "kind", ("exclusive", "read_write"), "exclusive"),
            protects=self.names(raw, "protects"),
            location=self.location(raw),
        )

    def function(self, raw: Dict[str, Any]) -> Function:
        blocks = tuple(
            BasicBlock(
                block_id=index,
                successors=self.integers(block, "successors"),
                exit_kind=self.choice(block, "exit", ("return", "raise", "end"), None),
                location=self.location(block),
                label=self.optional_text(block, "label"),
            )
            for index, block in enumerate(self.items(raw, "blocks"))
        )
        cfg = ControlFlowGraph(blocks=blocks, entry=self.integer(raw, "entry", 0)) if blocks else _single_block_cfg()
        return Function(
            name=self.text(raw, "name"),
            cfg=cfg,
            calls=self.names(raw, "calls"),
            accesses=tuple(
                Access(
                    binding=self.text(item, "binding"),
                    kind=self.choice(item, "kind", ("read", "write"), "read"),
                    block=self.integer(item, "block", 0),
                    location=self.location(item),
                    annotations=self.annotations(item),
                )
                for item in self.items(raw, "accesses")
            ),
            returns=tuple(
                ReturnSite(
                    block=self.integer(item, "block", 0),
                    value=self.optional_text(item, "value"),
                    aliases=self.flag(item, "aliases", False),
                    location=self.location(item),
                    annotations=self.annotations(item),
                )
                for item in self.items(raw, "returns")
            ),
            location=self.location(raw),
            annotations=self.annotations(raw),
        )

    def critical_section(self, raw: Dict[str, Any]) -> CriticalSection:
        return CriticalSection(
            lock=self.text(raw, "lock"),
            function=self.text(raw, "function"),
            enter_block=self.integer(raw, "enter_block", 0),
            exit_blocks=self.integers(raw, "exit_blocks"),
            performs_io=self.flag(raw, "performs_io"),
            unbounded_loop=self.flag(raw, "unbounded_loop"),
            size=self.integer(raw, "size", 0),
            location=self.location(raw),
            annotations=self.annotations(raw),
        )

    def task(self, raw: Dict[str, Any]) -> ConcurrentTask:
        raw_captures = raw.get("captures") or {}
        if not isinstance(raw_captures, dict):
            raise IRDocumentError("field 'captures' must map binding names to a capture mode")
        captures = []
        for binding, mode in raw_captures.items():
            if mode not in ("by_reference", "by_value"):
                raise IRDocumentError(f"capture of '{binding}' must be by_reference or by_value, got {mode!r}")
            captures.append(Capture(binding=str(binding), mode=mode))
        return ConcurrentTask(
            name=self.text(raw, "name"),
            entry=self.text(raw, "entry"),
            captures=tuple(captures),
            replicated=self.flag(raw, "replicated"),
            location=self.location(raw),
        )

    def registration(self, raw: Dict[str, Any]) -> Registration:
        return Registration(
            call=self.text(raw, "call"),
            handler=self.text(raw, "handler"),
            location=self.location(raw),
        )

    def channel(self, raw: Dict[str, Any]) -> Channel:
        return Channel(
            name=self.text(raw, "name"),
            capacity=self.choice(raw, "capacity", ("zero", "bounded", "unbounded"), "unbounded"),
            size=self.optional_integer(raw, "size"),
            location=self.location(raw),
            annotations=self.annotations(raw),
        )

    def concurrent_map(self, raw: Dict[str, Any]) -> ConcurrentMap:
        kinds = ("load", "store", "delete", "load_or_store", "load_and_delete")
        return ConcurrentMap(
            name=self.text(raw, "name"),
            operations=tuple(
                MapOperation(
                    kind=self.choice(item, "kind", kinds, "load"),
                    key=self.text(item, "key"),
                    function=self.text(item, "function"),
                    block=self.integer(item, "block", 0),
                    miss_block=self.optional_integer(item, "miss_block"),
                    location=self.location(item),
                    annotations=self.annotations(item),
                )
                for item in self.items(raw, "operations")
            ),
            location=self.location(raw),
            annotations=self.annotations(raw),
        )

    def timer(self, raw: Dict[str, Any]) -> Timer:
        return Timer(
            name=self.text(raw, "name"),
            function=self.text(raw, "function"),
            kind=self.choice(raw, "kind", ("one_shot", "repeating"), "repeating"),
            block=self.integer(raw, "block", 0),
            stop_blocks=self.integers(raw, "stop_blocks"),
            deferred_stop=self.flag(raw, "deferred_stop"),
            location=self.location(raw),
            annotations=self.annotations(raw),
        )

    def instant(self, raw: Dict[str, Any]) -> TimeInstant:
        return TimeInstant(
            name=self.text(raw, "name"),
            monotonic=self.flag(raw, "monotonic", True),
            derived_from=self.optional_text(raw, "derived_from"),
            transformation=self.optional_text(raw, "transformation"),
            location=self.location(raw),
        )

    def comparison(self, raw: Dict[str, Any]) -> Comparison:
        return Comparison(
            operator=self.choice(raw, "operator", ("equals", "before", "after"), "equals"),
            left=self.text(raw, "left"),
            right=self.text(raw, "right"),
            structural=self.flag(raw, "structural", True),
            targets_persisted=self.flag(raw, "targets_persisted"),
            location=self.location(raw),
            annotations=self.annotations(raw),
        )

    def elapsed(self, raw: Dict[str, Any]) -> ElapsedComputation:
        return ElapsedComputation(
            instant=self.text(raw, "instant"),
            location=self.location(raw),
            annotations=self.annotations(raw),
        )


def ir_from_document(document: Any, default_unit: str = "<memory>") -> IRModel:
    """
    Hydrate an IRModel from a parsed YAML/JSON document written by a
    language front-end. Raises IRDocumentError on malformed input.
    """
    if not isinstance(document, dict):
        raise IRDocumentError("IR document must be a mapping")
    for key in sorted(str(k) for k in document if k not in _IR_DOCUMENT_KEYS):
        _warn_once(f"Ignoring unknown IR document key '{key}'.")

    unit = str(document.get("unit") or default_unit)
    reader = _DocumentReader(unit)
    return IRModel(
        unit=unit,
        bindings=tuple(reader.binding(raw) for raw in reader.items(document, "bindings")),
        locks=tuple(reader.lock(raw) for raw in reader.items(document, "locks")),
        functions=tuple(reader.function(raw) for raw in reader.items(document, "functions")),
        critical_sections=tuple(
            reader.critical_section(raw) for raw in reader.items(document, "critical_sections")
        ),
        tasks=tuple(reader.task(raw) for raw in reader.items(document, "tasks")),
        registrations=tuple(reader.registration(raw) for raw in reader.items(document, "registrations")),
        channels=tuple(reader.channel(raw) for raw in reader.items(document, "channels")),
        maps=tuple(reader.concurrent_map(raw) for raw in reader.items(document, "maps")),
        timers=tuple(reader.timer(raw) for raw in reader.items(document, "timers")),
        instants=tuple(reader.instant(raw) for raw in reader.items(document, "instants")),
        comparisons=tuple(reader.comparison(raw) for raw in reader.items(document, "comparisons")),
        elapsed=tuple(reader.elapsed(raw) for raw in reader.items(document, "elapsed")),
        annotations=reader.annotations(document),
    )


class DocumentIRBuilder(IRBuilder):
    """Reads IR documents (YAML, or JSON which YAML accepts) from disk."""

    def build(self, unit: str) -> IRBuildResult:
        try:
            with open(unit, "r", encoding="utf-8") as handle:
                document = yaml.safe_load(handle)
        except FileNotFoundError:
            return ParseFailure(unit=unit, reason="IR document not found")
        except OSError as exc:
            return ParseFailure(unit=unit, reason=f"could not read IR document: {exc}")
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            location = SourceLocation(unit, mark.line + 1, mark.column + 1) if mark is not None else None
            return ParseFailure(unit=unit, reason=f"malformed IR document: {exc}", location=location)

        try:
            return ir_from_document(document, default_unit=unit)
        except IRDocumentError as exc:
            return ParseFailure(unit=unit, reason=str(exc))


# ============================================================
# ================== DIAGNOSTIC OUTPUT =======================
# ============================================================

def diagnostic_to_json_obj(d: Diagnostic) -> Dict[str, Any]:
    """
    Convert a Diagnostic into a JSON-friendly dict.
    Kept explicit so the field order stays stable for consumers.
    """
    return {
        "rule_id": d.rule_id,
        "severity": d.severity,
        "confidence": d.confidence,
        "suppressed": d.suppressed,
        "justification": d.justification,
        "message": d.message,
        "unit": d.unit,
        "location": {
            "file": d.location.file,
            "line": d.location.line,
            "column": d.location.column,
        },
        "suggested_fix": d.suggested_fix,
        "extras": d.extras,
        "tool": "Vigil",
        "version": __version__,
    }


def emit_diagnostics_json(diagnostics: Iterable[Diagnostic], out: Optional[str] = None) -> None:
    """
    Serialize diagnostics to JSON (list of diagnostic objects).
    """
    as_json = [diagnostic_to_json_obj(d) for d in diagnostics]
    text = json.dumps(as_json, indent=2, sort_keys=False)
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


# ============================================================
# ============================ CLI ===========================
# ============================================================

EXIT_CODES: Dict[str, int] = {"clean": 0, "findings": 1, "engine_error": 2}
EXIT_CONFIGURATION_ERROR = 3


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for Vigil.
    Intended usage:
      vigil analyze --config vigil.yaml build/ir/cache.yaml build/ir/server.yaml
      vigil rules
    """
    parser = argparse.ArgumentParser(
        prog="vigil",
        description="Vigil: concurrency hazard detection over program IR documents",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_p = subparsers.add_parser(
        "analyze",
        help="Analyze IR documents and emit JSON diagnostics.",
    )
    analyze_p.add_argument(
        "--config",
        metavar="CONFIG_YAML",
        default=os.environ.get("VIGIL_CONFIG"),
        help="Rule/engine configuration (default: $VIGIL_CONFIG).",
    )
    analyze_p.add_argument(
        "--out",
        metavar="OUT_JSON",
        help="Write diagnostics to this JSON file instead of stdout.",
    )
    analyze_p.add_argument(
        "--workers",
        type=int,
        help="Override engine.workers.",
    )
    analyze_p.add_argument(
        "--hide-suppressed",
        action="store_true",
        help="Leave suppressed diagnostics out of the output.",
    )
    analyze_p.add_argument(
        "files",
        nargs="+",
        help="IR documents (YAML or JSON) to analyze.",
    )

    subparsers.add_parser("rules", help="List the rule catalog.")

    args = parser.parse_args(argv)

    if args.command == "rules":
        for detector in DETECTORS:
            markers = f" [markers: {', '.join(detector.intent_markers)}]" if detector.intent_markers else ""
            print(
                f"{detector.rule_id:5} {detector.default_severity:6} "
                f"{detector.default_confidence:6} {detector.title}{markers}"
            )
        return 0

    if args.command == "analyze":
        try:
            if args.config:
                catalog, settings = load_configuration(args.config)
            else:
                catalog, settings = RuleCatalog.default(), EngineSettings()
            if args.workers is not None:
                if args.workers < 1:
                    raise ConfigurationError("--workers must be at least 1")
                settings = replace(settings, workers=args.workers)
        except ConfigurationError as exc:
            sys.stderr.write(f"[vigil] Configuration error: {exc}\n")
            return EXIT_CONFIGURATION_ERROR

        engine = HazardEngine(catalog, settings)
        result = engine.analyze_sources(DocumentIRBuilder(), args.files)

        diagnostics = result.actionable if args.hide_suppressed else list(result.diagnostics)
        emit_diagnostics_json(diagnostics, out=args.out)
        return EXIT_CODES[result.outcome]

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
