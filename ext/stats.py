"""pipa extension: per-run statistics.

Counts executed instructions by opcode, macro calls, array iterations and the
characters that reach the output, then prints a one-line summary to stderr at
program end. Counters live per VM, so concurrent renders never mix.
"""

from __future__ import annotations

import sys
import weakref
from collections import Counter
from typing import Any

from extensions import ArrayIterEvent, ExtensionAPI, MacroCallEvent, StepContext

PIPA_EXTENSION_NAME = "stats"
PIPA_EXTENSION_API_VERSION = 1


class RunStats:
    def __init__(self) -> None:
        self.opcodes: Counter = Counter()
        self.chars = 0
        self.macro_calls = 0
        self.items = 0

    def summary(self) -> str:
        steps = sum(self.opcodes.values())
        top = ", ".join(f"{op}={count}" for op, count in sorted(self.opcodes.items()))
        return (
            f"[stats] {steps} steps, {self.chars} chars emitted, "
            f"{self.macro_calls} macro calls, {self.items} items ({top})"
        )


_RUNS: "weakref.WeakKeyDictionary[Any, RunStats]" = weakref.WeakKeyDictionary()


def stats_for(vm: Any) -> RunStats:
    stats = _RUNS.get(vm)
    if stats is None:
        stats = _RUNS[vm] = RunStats()
    return stats


def _on_start(vm: Any, program: Any) -> None:
    _RUNS[vm] = RunStats()


def _on_step(vm: Any, ctx: StepContext) -> None:
    stats_for(vm).opcodes[ctx.opcode] += 1


def _on_macro(vm: Any, event: MacroCallEvent) -> None:
    stats_for(vm).macro_calls += 1


def _on_array(vm: Any, event: ArrayIterEvent) -> None:
    stats_for(vm).items += len(event.items)


def _count_output(vm: Any, text: str) -> str:
    stats_for(vm).chars += len(text)
    return text


def _on_end(vm: Any) -> None:
    print(stats_for(vm).summary(), file=sys.stderr)


def pipa_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=PIPA_EXTENSION_NAME, version="1.1.0")
    ext.on_event("program_start", _on_start)
    ext.on_event("macro_call", _on_macro)
    ext.on_event("array_iter", _on_array)
    ext.every_n_steps(1, _on_step)
    # Lowest priority so the count reflects what other filters hand on.
    ext.output_filter(_count_output, priority=-100)
    ext.on_event("program_end", _on_end)
