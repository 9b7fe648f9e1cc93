import unittest
from dataclasses import replace

import vigil


def loc(line):
    return vigil.SourceLocation("server.go", line)


def run_rule(ir, rule_id, **thresholds):
    detector = vigil.detector_for(rule_id)
    settings = detector.default_settings()
    if thresholds:
        settings = replace(settings, thresholds={**settings.thresholds, **thresholds})
    return detector.evaluate(ir, settings)


def build_handler_unit(second_handler=False, guarded=False, call="http.HandleFunc") -> vigil.IRModel:
    functions = [
        vigil.Function(
            "serveCount",
            accesses=(vigil.Access("hits", "write", location=loc(12)),),
            location=loc(10),
        ),
        vigil.Function("flush", accesses=(vigil.Access("hits", "read", location=loc(30)),)),
    ]
    registrations = [vigil.Registration(call, "serveCount", location=loc(50))]
    if second_handler:
        functions.append(
            vigil.Function("serveReset", accesses=(vigil.Access("hits", "write", location=loc(20)),))
        )
        registrations.append(vigil.Registration(call, "serveReset", location=loc(51)))
    sections = ()
    if guarded:
        sections = (vigil.CriticalSection(lock="mu", function="serveCount"),)
    return vigil.IRModel(
        unit="server.go",
        bindings=(vigil.Binding("hits"),),
        locks=(vigil.Lock("mu", protects=("hits",)),),
        functions=tuple(functions),
        registrations=tuple(registrations),
        tasks=(vigil.ConcurrentTask("flusher", entry="flush"),),
        critical_sections=sections,
    )


class HandlerSafetyTests(unittest.TestCase):
    def test_handler_write_shared_with_task(self) -> None:
        candidates = run_rule(build_handler_unit(), "RC.1")
        self.assertEqual(len(candidates), 1)
        found = candidates[0]
        self.assertEqual(found.location, loc(12))
        self.assertEqual(found.extras["sharers"], ["task 'flusher'"])
        self.assertIn("handler 'serveCount' registered with http.HandleFunc writes 'hits'", found.message)
        self.assertEqual(found.severity, "high")

    def test_two_handlers_report_each_other(self) -> None:
        candidates = run_rule(build_handler_unit(second_handler=True), "RC.1")
        by_handler = {c.extras["handler"]: c.extras["sharers"] for c in candidates}
        self.assertEqual(by_handler["serveCount"], ["handler 'serveReset'", "task 'flusher'"])
        self.assertEqual(by_handler["serveReset"], ["handler 'serveCount'", "task 'flusher'"])

    def test_guarded_handler_is_clean(self) -> None:
        self.assertEqual(run_rule(build_handler_unit(guarded=True), "RC.1"), [])

    def test_unregistered_function_is_not_a_handler(self) -> None:
        self.assertEqual(run_rule(build_handler_unit(call="router.Use"), "RC.1"), [])

    def test_custom_handler_patterns(self) -> None:
        ir = build_handler_unit(call="router.Use")
        candidates = run_rule(ir, "RC.1", handler_patterns=(r"\.Use$",))
        self.assertEqual(len(candidates), 1)

    def test_handler_alone_is_not_concurrent_with_itself(self) -> None:
        ir = vigil.IRModel(
            unit="server.go",
            bindings=(vigil.Binding("hits"),),
            functions=(vigil.Function("serveCount", accesses=(vigil.Access("hits", "write"),)),),
            registrations=(vigil.Registration("http.HandleFunc", "serveCount"),),
        )
        self.assertEqual(run_rule(ir, "RC.1"), [])

    def test_access_in_callee_names_the_path(self) -> None:
        ir = vigil.IRModel(
            unit="server.go",
            bindings=(vigil.Binding("hits"),),
            functions=(
                vigil.Function("serveCount", calls=("bump",)),
                vigil.Function("bump", accesses=(vigil.Access("hits", "write", location=loc(70)),)),
                vigil.Function("flush", accesses=(vigil.Access("hits", "read"),)),
            ),
            registrations=(vigil.Registration("mux.Handle", "serveCount"),),
            tasks=(vigil.ConcurrentTask("flusher", entry="flush"),),
        )
        candidates = run_rule(ir, "RC.1")
        self.assertEqual(len(candidates), 1)
        self.assertIn("(via 'bump')", candidates[0].message)


def build_counter_unit(
    replicated=False,
    second_task=True,
    guard_writer=False,
    guard_reader=False,
    capture_by_value=False,
    binding=None,
) -> vigil.IRModel:
    tasks = [vigil.ConcurrentTask("incrementer", entry="incr", replicated=replicated)]
    if second_task:
        captures = (vigil.Capture("counter", "by_value"),) if capture_by_value else ()
        tasks.append(vigil.ConcurrentTask("reporter", entry="report", captures=captures))
    sections = []
    if guard_writer:
        sections.append(vigil.CriticalSection(lock="mu", function="incr"))
    if guard_reader:
        sections.append(vigil.CriticalSection(lock="mu", function="report"))
    return vigil.IRModel(
        unit="counter.go",
        bindings=(binding or vigil.Binding("counter"),),
        locks=(vigil.Lock("mu"),),
        functions=(
            vigil.Function("incr", accesses=(vigil.Access("counter", "write", location=loc(5)),)),
            vigil.Function("report", accesses=(vigil.Access("counter", "read", location=loc(9)),)),
        ),
        tasks=tuple(tasks),
        critical_sections=tuple(sections),
    )


class UnguardedAccessTests(unittest.TestCase):
    def test_write_and_read_in_two_tasks_yield_exactly_two_findings(self) -> None:
        candidates = run_rule(build_counter_unit(), "RC.2")
        self.assertEqual([c.location.line for c in candidates], [5, 9])
        self.assertEqual(candidates[0].extras["tasks"], ["incrementer", "reporter"])
        self.assertIn("'counter' is written in 'incr'", candidates[0].message)

    def test_guarded_site_is_not_reported(self) -> None:
        candidates = run_rule(build_counter_unit(guard_writer=True), "RC.2")
        self.assertEqual([c.location.line for c in candidates], [9])

    def test_both_sites_guarded_is_clean(self) -> None:
        self.assertEqual(run_rule(build_counter_unit(guard_writer=True, guard_reader=True), "RC.2"), [])

    def test_unlock_on_one_branch_leaves_merge_unguarded(self) -> None:
        # 0: mu.Lock(); if fast { 1: mu.Unlock() } else { 2: ... }  3: counter++
        cfg = vigil.ControlFlowGraph(
            blocks=(
                vigil.BasicBlock(0, successors=(1, 2)),
                vigil.BasicBlock(1, successors=(3,)),
                vigil.BasicBlock(2, successors=(3,)),
                vigil.BasicBlock(3, exit_kind="return"),
            )
        )
        ir = vigil.IRModel(
            unit="counter.go",
            bindings=(vigil.Binding("counter"),),
            locks=(vigil.Lock("mu"),),
            functions=(
                vigil.Function("incr", cfg=cfg, accesses=(vigil.Access("counter", "write", block=3, location=loc(17)),)),
            ),
            tasks=(vigil.ConcurrentTask("incrementer", entry="incr", replicated=True),),
            critical_sections=(vigil.CriticalSection(lock="mu", function="incr", enter_block=0, exit_blocks=(1,)),),
        )
        self.assertFalse(ir.is_guarded("incr", 3, "counter"))
        candidates = run_rule(ir, "RC.2")
        self.assertEqual([c.location for c in candidates], [loc(17)])

    def test_single_task_is_not_shared(self) -> None:
        self.assertEqual(run_rule(build_counter_unit(second_task=False), "RC.2"), [])

    def test_replicated_task_counts_twice(self) -> None:
        candidates = run_rule(build_counter_unit(second_task=False, replicated=True), "RC.2")
        self.assertEqual(len(candidates), 1)

    def test_by_value_capture_is_not_sharing(self) -> None:
        self.assertEqual(run_rule(build_counter_unit(capture_by_value=True), "RC.2"), [])

    def test_immutable_and_atomic_bindings_are_skipped(self) -> None:
        frozen = build_counter_unit(binding=vigil.Binding("counter", mutable=False))
        atomic = build_counter_unit(binding=vigil.Binding("counter", category="atomic"))
        self.assertEqual(run_rule(frozen, "RC.2"), [])
        self.assertEqual(run_rule(atomic, "RC.2"), [])

    def test_min_tasks_threshold(self) -> None:
        self.assertEqual(run_rule(build_counter_unit(), "RC.2", min_tasks=3), [])

    def test_unreachable_access_is_ignored(self) -> None:
        cfg = vigil.ControlFlowGraph(
            blocks=(
                vigil.BasicBlock(0, exit_kind="return"),
                vigil.BasicBlock(1, successors=(0,)),
            )
        )
        ir = vigil.IRModel(
            unit="counter.go",
            bindings=(vigil.Binding("counter"),),
            functions=(vigil.Function("incr", cfg=cfg, accesses=(vigil.Access("counter", "write", block=1),)),),
            tasks=(vigil.ConcurrentTask("incrementer", entry="incr", replicated=True),),
        )
        self.assertEqual(run_rule(ir, "RC.2"), [])


def build_accessor_unit(aliases=True, category="compound", return_block=0) -> vigil.IRModel:
    # 0: mu.Lock(); defer mu.Unlock()  1: (after an explicit unlock)
    cfg = vigil.ControlFlowGraph(
        blocks=(
            vigil.BasicBlock(0, successors=(1,), exit_kind=None),
            vigil.BasicBlock(1, exit_kind="return"),
        )
    )
    exit_blocks = (1,) if return_block == 1 else ()
    return vigil.IRModel(
        unit="cache.go",
        bindings=(vigil.Binding("entries", category=category),),
        locks=(vigil.Lock("mu", protects=("entries",)),),
        functions=(
            vigil.Function(
                "Snapshot",
                cfg=cfg,
                returns=(vigil.ReturnSite(return_block, value="entries", aliases=aliases, location=loc(41)),),
            ),
        ),
        critical_sections=(
            vigil.CriticalSection(lock="mu", function="Snapshot", enter_block=0, exit_blocks=exit_blocks),
        ),
    )


class LeakedReferenceTests(unittest.TestCase):
    def test_returning_protected_map_by_reference(self) -> None:
        candidates = run_rule(build_accessor_unit(), "RC.3")
        self.assertEqual(len(candidates), 1)
        self.assertEqual(candidates[0].location, loc(41))
        self.assertEqual(candidates[0].extras, {"function": "Snapshot", "binding": "entries", "lock": "mu"})

    def test_returning_a_copy_is_fine(self) -> None:
        self.assertEqual(run_rule(build_accessor_unit(aliases=False), "RC.3"), [])

    def test_primitive_value_is_not_a_leak(self) -> None:
        self.assertEqual(run_rule(build_accessor_unit(category="primitive"), "RC.3"), [])

    def test_return_after_unlock_is_not_covered(self) -> None:
        self.assertEqual(run_rule(build_accessor_unit(return_block=1), "RC.3"), [])


def build_map_unit(kinds=("load", "store"), store_block=1, replicated=True) -> vigil.IRModel:
    # 0: v, ok := m.Load(id)  1: if !ok { m.Store(id, new) }  2: return
    cfg = vigil.ControlFlowGraph(
        blocks=(
            vigil.BasicBlock(0, successors=(1, 2)),
            vigil.BasicBlock(1, successors=(2,)),
            vigil.BasicBlock(2, exit_kind="return"),
        )
    )
    operations = []
    for kind in kinds:
        if kind == "store":
            operations.append(
                vigil.MapOperation("store", "id", "getOrCreate", block=store_block, location=loc(88))
            )
        elif kind == "load":
            operations.append(
                vigil.MapOperation("load", "id", "getOrCreate", block=0, miss_block=1, location=loc(86))
            )
        else:
            operations.append(vigil.MapOperation(kind, "id", "getOrCreate", block=0))
    return vigil.IRModel(
        unit="sessions.go",
        functions=(vigil.Function("getOrCreate", cfg=cfg),),
        maps=(vigil.ConcurrentMap("sessions", operations=tuple(operations)),),
        tasks=(vigil.ConcurrentTask("handler", entry="getOrCreate", replicated=replicated),),
    )


class LoadThenStoreTests(unittest.TestCase):
    def test_store_on_miss_branch(self) -> None:
        candidates = run_rule(build_map_unit(), "RC.4")
        self.assertEqual(len(candidates), 1)
        self.assertEqual(candidates[0].location, loc(88))
        self.assertEqual(candidates[0].extras["load_location"], "server.go:86")
        self.assertEqual(candidates[0].confidence, "medium")

    def test_load_or_store_for_the_key_is_atomic(self) -> None:
        ir = build_map_unit(kinds=("load", "store", "load_or_store"))
        self.assertEqual(run_rule(ir, "RC.4"), [])

    def test_store_not_dominated_by_miss(self) -> None:
        self.assertEqual(run_rule(build_map_unit(store_block=2), "RC.4"), [])

    def test_single_task_cannot_interleave(self) -> None:
        self.assertEqual(run_rule(build_map_unit(replicated=False), "RC.4"), [])

    def test_benign_marker_on_the_line(self) -> None:
        marker = vigil.Annotation(marker="benign", justification="idempotent init", location=loc(88))
        ir = replace(build_map_unit(), annotations=(marker,))
        catalog = vigil.RuleCatalog.from_mapping({d.rule_id: d.rule_id == "RC.4" for d in vigil.DETECTORS})
        result = vigil.HazardEngine(catalog).analyze([ir])
        self.assertEqual([(d.rule_id, d.suppressed) for d in result.diagnostics], [("RC.4", True)])
        self.assertEqual(result.diagnostics[0].justification, "idempotent init")


if __name__ == "__main__":
    unittest.main()
