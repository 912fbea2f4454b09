from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from diagnostics import Sink, Span, excerpt
from extensions import (
    ArrayIterEvent,
    HookRegistry,
    MacroCallEvent,
    RuntimeServices,
    StepContext,
    build_default_services,
)
from ir import (
    INDEX_BINDING,
    ITEM_BINDING,
    PATTERN_BINDING,
    BeginArrayIter,
    BeginCapture,
    BeginMacroCall,
    CommentOp,
    EmitLiteral,
    EmitVar,
    EndArrayIter,
    EndCapture,
    EndMacroCall,
    Fragment,
    Instruction,
    IRProgram,
    PopScope,
    PushScope,
)
from lexer import PipaError


ROOT_FRAME_ID = "f_root"
ROOT_FRAME_NAME = "<document>"


class PipaRuntimeError(PipaError):
    """Raised for faults while executing a program."""

    rule = "runtime"

    def __init__(self, message: str, span: Optional[Span] = None) -> None:
        super().__init__(message, span)
        self.step_index: Optional[int] = None


class UndefinedVariable(PipaRuntimeError):
    rule = "EMIT_VAR"

    def __init__(self, name: str, span: Optional[Span] = None) -> None:
        super().__init__(f"undefined variable '{name}'", span)
        self.name = name


class UndefinedArray(PipaRuntimeError):
    rule = "BEGIN_ARRAY_ITER"

    def __init__(self, name: str, span: Optional[Span] = None) -> None:
        super().__init__(f"undefined array '{name}'", span)
        self.name = name


class ExtensionFailure(PipaRuntimeError):
    rule = "EXT"


class InternalError(PipaRuntimeError):
    rule = "internal"


@dataclass
class Frame:
    name: str
    kind: str
    frame_id: str
    span: Optional[Span]
    values: Dict[str, str] = field(default_factory=dict)


class ScopeStack:
    """Per-iteration bindings, innermost frame last."""

    def __init__(self) -> None:
        self.frames: List[Frame] = []

    def push(self, frame: Frame) -> int:
        self.frames.append(frame)
        return len(self.frames) - 1

    def pop(self) -> Frame:
        if not self.frames:
            raise InternalError("scope stack underflow")
        return self.frames.pop()

    def top(self) -> Optional[Frame]:
        return self.frames[-1] if self.frames else None

    def bind(self, name: str, value: str) -> None:
        if not self.frames:
            raise InternalError(f"cannot bind '{name}' outside a scope")
        self.frames[-1].values[name] = value

    def lookup(self, name: str) -> Optional[str]:
        for frame in reversed(self.frames):
            if name in frame.values:
                return frame.values[name]
        return None

    def visible(self) -> Dict[str, str]:
        merged: Dict[str, str] = {}
        for frame in self.frames:
            merged.update(frame.values)
        return merged


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: str
    span: Optional[Span]
    opcode: str
    operand: str
    env_snapshot: Optional[Dict[str, str]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame_id: str,
        instruction: Instruction,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame_id,
            span=instruction.span,
            opcode=instruction.opcode,
            operand=instruction.operand(),
            env_snapshot=env_snapshot,
        )
        self.entries.append(entry)
        self.frame_last_entry[frame_id] = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)


def _match_iterations(fragment: Fragment) -> Dict[int, int]:
    matches: Dict[int, int] = {}
    open_positions: List[int] = []
    for position, instruction in enumerate(fragment):
        if isinstance(instruction, BeginArrayIter):
            open_positions.append(position)
        elif isinstance(instruction, EndArrayIter):
            if not open_positions:
                raise InternalError("END_ARRAY_ITER without BEGIN_ARRAY_ITER", instruction.span)
            matches[open_positions.pop()] = position
    if open_positions:
        raise InternalError("BEGIN_ARRAY_ITER without END_ARRAY_ITER", fragment[open_positions[-1]].span)
    return matches


class VirtualMachine:
    def __init__(
        self,
        variables: Mapping[str, str],
        arrays: Mapping[str, Sequence[str]],
        *,
        services: Optional[RuntimeServices] = None,
        verbose: bool = False,
    ) -> None:
        self.variables: Dict[str, str] = dict(variables)
        self.arrays: Dict[str, Tuple[str, ...]] = {name: tuple(items) for name, items in arrays.items()}
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.scopes = ScopeStack()
        self.logger = StateLogger(verbose=verbose)
        self.frame_counter = 0
        self._program: Optional[IRProgram] = None
        self._sink: Optional[Sink] = None
        self._captures: List[List[str]] = []
        self._iterations: Dict[int, Dict[int, int]] = {}

    def run(self, output_sink: Sink, program: IRProgram) -> None:
        self.scopes = ScopeStack()
        self.logger = StateLogger(verbose=self.verbose)
        self.frame_counter = 0
        self._program = program
        self._sink = output_sink
        self._captures = []
        self._iterations = {}
        try:
            self._emit_event("program_start", self, program)
            self._execute(program.instructions)
            self._emit_event("program_end", self)
        except PipaRuntimeError as error:
            self._fail(error)
            raise
        except Exception as exc:
            # Surface Python-level faults as runtime errors so callers can
            # format them like any other failed run.
            wrapped = InternalError(f"Internal VM error: {exc}", self._last_span())
            self._fail(wrapped)
            raise wrapped from exc
        finally:
            self._sink = None

    def _fail(self, error: PipaRuntimeError) -> None:
        if error.step_index is None and self.logger.entries:
            error.step_index = self.logger.entries[-1].step_index
        self._emit_event("on_error", self, error)

    def _last_span(self) -> Optional[Span]:
        return self.logger.entries[-1].span if self.logger.entries else None

    def _execute(self, fragment: Fragment) -> None:
        key = id(fragment)
        matches = self._iterations.get(key)
        if matches is None:
            matches = self._iterations[key] = _match_iterations(fragment)
        self._execute_range(fragment, 0, len(fragment), matches)

    def _execute_range(self, fragment: Fragment, start: int, end: int, matches: Dict[int, int]) -> None:
        i = start
        log_step = self._log_step
        write = self._write
        scopes = self.scopes
        while i < end:
            instruction = fragment[i]
            log_step(instruction)
            if isinstance(instruction, EmitLiteral):
                write(instruction.text)
            elif isinstance(instruction, EmitVar):
                write(self._lookup(instruction))
            elif isinstance(instruction, BeginArrayIter):
                close = matches[i]
                items = self._array(instruction)
                if self.hook_registry.listens_to("array_iter"):
                    self._emit_event("array_iter", self, ArrayIterEvent(instruction.array, items, instruction.span))
                for index, item in enumerate(items):
                    scopes.push(
                        self._new_frame(
                            f"{instruction.array}[{index}]",
                            "iteration",
                            instruction.span,
                            {INDEX_BINDING: str(index), ITEM_BINDING: item},
                        )
                    )
                    self._execute_range(fragment, i + 1, close, matches)
                    scopes.pop()
                log_step(fragment[close])
                i = close + 1
                continue
            elif isinstance(instruction, BeginMacroCall):
                assert self._program is not None
                macro = self._program.macros.lookup(instruction.block, instruction.name)
                rendered = self._capture(macro.pattern)
                if self.hook_registry.listens_to("macro_call"):
                    self._emit_event(
                        "macro_call", self, MacroCallEvent(macro.name, macro.block, instruction.span, rendered)
                    )
                scopes.push(self._new_frame(f"?{macro.name}", "macro", instruction.span, {PATTERN_BINDING: rendered}))
                self._execute(macro.body)
            elif isinstance(instruction, (EndMacroCall, PopScope)):
                scopes.pop()
            elif isinstance(instruction, PushScope):
                scopes.push(self._new_frame("<scope>", "scope", instruction.span, {}))
            elif isinstance(instruction, BeginCapture):
                self._captures.append([])
            elif isinstance(instruction, EndCapture):
                scopes.bind(instruction.name, "".join(self._captures.pop()))
            elif isinstance(instruction, EndArrayIter):
                raise InternalError("unbalanced END_ARRAY_ITER", instruction.span)
            elif not isinstance(instruction, CommentOp):
                raise InternalError(f"unknown instruction {instruction.opcode}", instruction.span)
            i += 1

    def _capture(self, fragment: Fragment) -> str:
        self._captures.append([])
        self._execute(fragment)
        return "".join(self._captures.pop())

    def _write(self, text: str) -> None:
        if self._captures:
            self._captures[-1].append(text)
            return
        assert self._sink is not None
        if self.hook_registry.has_output_filters:
            text = self._filter_output(text)
        self._sink(text)

    def _filter_output(self, text: str) -> str:
        try:
            return self.hook_registry.filter_output(self, text)
        except PipaRuntimeError:
            raise
        except Exception as exc:
            raise ExtensionFailure(f"Extension output filter failed: {exc}", self._last_span()) from exc

    def _lookup(self, instruction: EmitVar) -> str:
        value = self.scopes.lookup(instruction.name)
        if value is not None:
            return value
        try:
            return self.variables[instruction.name]
        except KeyError:
            raise UndefinedVariable(instruction.name, instruction.span) from None

    def _array(self, instruction: BeginArrayIter) -> Tuple[str, ...]:
        try:
            return self.arrays[instruction.array]
        except KeyError:
            raise UndefinedArray(instruction.array, instruction.span) from None

    def _new_frame(self, name: str, kind: str, span: Optional[Span], values: Dict[str, str]) -> Frame:
        self.frame_counter += 1
        return Frame(name=name, kind=kind, frame_id=f"f_{self.frame_counter:06d}", span=span, values=values)

    def _emit_event(self, event: str, *args: Any) -> None:
        try:
            self.hook_registry.emit(event, *args)
        except PipaRuntimeError:
            raise
        except Exception as exc:
            raise ExtensionFailure(f"Extension hook '{event}' failed: {exc}", self._last_span()) from exc

    def _log_step(self, instruction: Instruction) -> None:
        frame = self.scopes.top()
        frame_id = frame.frame_id if frame else ROOT_FRAME_ID
        snapshot = self.scopes.visible() if self.verbose else None
        entry = self.logger.record(frame_id=frame_id, instruction=instruction, env_snapshot=snapshot)
        if not self.hook_registry.has_step_rules:
            return
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, opcode=entry.opcode, span=entry.span, frame_id=frame_id),
            )
        except PipaRuntimeError:
            raise
        except Exception as exc:
            raise ExtensionFailure(f"Extension step rule failed: {exc}", instruction.span) from exc

    def dump_state(self, sink: Sink) -> None:
        lines = [f"variables ({len(self.variables)}):"]
        for name in sorted(self.variables):
            lines.append(f"  {name} = {json.dumps(self.variables[name], ensure_ascii=False)}")
        lines.append(f"arrays ({len(self.arrays)}):")
        for name in sorted(self.arrays):
            lines.append(f"  {name} = {json.dumps(list(self.arrays[name]), ensure_ascii=False)}")
        sink("\n".join(lines) + "\n")


@dataclass
class TracebackFrame:
    name: str
    span: Optional[Span]
    opcode: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, vm: VirtualMachine, label: str, source: str) -> None:
        self.vm = vm
        self.label = label
        self.source = source

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        named = [(ROOT_FRAME_NAME, ROOT_FRAME_ID, None)]
        named.extend((frame.name, frame.frame_id, frame.span) for frame in self.vm.scopes.frames)
        for name, frame_id, fallback in named:
            entry = self.vm.logger.last_entry_for_frame(frame_id)
            frames.append(
                TracebackFrame(
                    name=name,
                    span=entry.span if entry else fallback,
                    opcode=entry.opcode if entry else None,
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: PipaRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.span:
                lines.append(f"  File \"{self.label}\", line {frame.span.line}, column {frame.span.column}, in {frame.name}")
                statement = excerpt(self.source, frame.span)[0].strip()
                if statement:
                    lines.append(f"    {statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.env_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v!r}" for k, v in sorted(frame.state_entry.env_snapshot.items()))
                    lines.append(f"    Bindings: {snapshot}")
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {error.rule})")
        return "\n".join(lines)

    def to_json(self, error: PipaRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.span:
                entry["source_location"] = {"file": self.label, **frame.span.to_dict()}
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                entry["opcode"] = frame.state_entry.opcode
                if frame.state_entry.env_snapshot is not None:
                    entry["env_snapshot"] = frame.state_entry.env_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
