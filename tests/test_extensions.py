import importlib.util
from pathlib import Path

import pytest

from engine import compile_source, render
from extensions import (
    ArrayIterEvent,
    ExtensionAPI,
    MacroCallEvent,
    PipaExtensionError,
    build_default_services,
    gather_extension_paths,
    load_runtime_services,
)
from vm import ExtensionFailure, VirtualMachine

STATS_EXTENSION = Path(__file__).resolve().parent.parent / "ext" / "stats.py"


def write_extension(tmp_path, name, body):
    path = tmp_path / name
    path.write_text(body, encoding="utf-8")
    return path


def test_events_fire_in_order():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    seen = []

    @ext.on_event("program_start")
    def start(vm, program):
        seen.append("start")

    @ext.on_event("program_end")
    def end(vm):
        seen.append("end")

    result = render("hello", {}, {}, services=services)
    assert result.output == "hello"
    assert seen == ["start", "end"]


def test_on_error_receives_runtime_error():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    errors = []
    ext.on_event("on_error", lambda vm, error: errors.append(error))
    result = render("{{ nope }}", {}, {}, services=services)
    assert errors == [result.error]


def test_event_priority_orders_handlers():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    seen = []
    ext.on_event("program_end", lambda vm: seen.append("low"), priority=0)
    ext.on_event("program_end", lambda vm: seen.append("high"), priority=10)
    render("", {}, {}, services=services)
    assert seen == ["high", "low"]


def test_unknown_event_is_rejected():
    ext = ExtensionAPI(services=build_default_services(), ext_name="test")
    with pytest.raises(PipaExtensionError):
        ext.on_event("after_statement", lambda *args: None)


def test_step_rules_run_every_n_steps():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    steps = []
    ext.every_n_steps(2, lambda vm, ctx: steps.append(ctx.step_index))
    render('{{ "a"\n"b"\n"c"\n"d" }}', {}, {}, services=services)
    assert steps == [0, 2]


def test_every_n_steps_must_be_positive():
    ext = ExtensionAPI(services=build_default_services(), ext_name="test")
    with pytest.raises(PipaExtensionError):
        ext.every_n_steps(0, lambda vm, ctx: None)


def test_failing_step_rule_becomes_runtime_error():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")

    def boom(vm, ctx):
        raise ValueError("nope")

    ext.every_n_steps(1, boom)
    result = render("{{ name }}", {"name": "x"}, {}, services=services)
    assert isinstance(result.error, ExtensionFailure)
    assert "nope" in result.error.message


def test_load_extension_from_file(tmp_path):
    path = write_extension(
        tmp_path,
        "shout.py",
        "PIPA_EXTENSION_NAME = 'shout'\n"
        "def pipa_register(ext):\n"
        "    ext.metadata(name='shout', version='2.0.0')\n",
    )
    services = load_runtime_services([str(path)])
    assert [(m.name, m.version) for m in services.metadata] == [("shout", "2.0.0")]


def test_extension_without_register_is_rejected(tmp_path):
    path = write_extension(tmp_path, "empty.py", "X = 1\n")
    with pytest.raises(PipaExtensionError):
        load_runtime_services([str(path)])


def test_extension_api_version_is_checked(tmp_path):
    path = write_extension(
        tmp_path,
        "future.py",
        "PIPA_EXTENSION_API_VERSION = 99\n" "def pipa_register(ext):\n" "    pass\n",
    )
    with pytest.raises(PipaExtensionError):
        load_runtime_services([str(path)])


def test_missing_extension_file(tmp_path):
    with pytest.raises(PipaExtensionError):
        load_runtime_services([str(tmp_path / "absent.py")])


def test_pointer_file_lists_extensions(tmp_path):
    sub = tmp_path / "exts"
    sub.mkdir()
    one = write_extension(sub, "one.py", "def pipa_register(ext):\n    pass\n")
    pointer = tmp_path / "all.pipax"
    pointer.write_text("# extensions\n\nexts/one.py  # the first one\n", encoding="utf-8")
    assert gather_extension_paths([str(pointer)]) == [str(one)]


def test_stats_extension_reports_summary(capsys):
    services = load_runtime_services([str(STATS_EXTENSION)])
    result = render('ab{{ "cd" }}', {}, {}, services=services)
    assert result.output == "abcd"
    err = capsys.readouterr().err
    assert "[stats] 2 steps, 4 chars emitted, 0 macro calls, 0 items (EMIT_LITERAL=2)" in err


def load_stats_module():
    spec = importlib.util.spec_from_file_location("pipa_stats_under_test", STATS_EXTENSION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_stats_counts_macros_and_items(capsys):
    services = load_runtime_services([str(STATS_EXTENSION)])
    source = '{{\n@li "$(_item_)" | "<$(_)>"\nL[:] | ?li\n}}'
    assert render(source, {}, {"L": ["a", "b", "c"]}, services=services).output == "<a><b><c>"
    err = capsys.readouterr().err
    assert "9 chars emitted, 3 macro calls, 3 items" in err


def test_stats_are_kept_per_vm():
    stats = load_stats_module()
    services = build_default_services()
    stats.pipa_register(ExtensionAPI(services=services, ext_name="stats"))
    first = VirtualMachine({}, {}, services=services)
    second = VirtualMachine({}, {}, services=services)
    first.run(lambda text: None, compile_source("ab"))
    second.run(lambda text: None, compile_source("hello"))
    assert stats.stats_for(first).chars == 2
    assert stats.stats_for(second).chars == 5


@pytest.mark.parametrize("event", ["program_start", "program_end"])
def test_failing_event_hook_becomes_runtime_error(event):
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")

    def boom(*args):
        raise ValueError("hook broke")

    ext.on_event(event, boom)
    result = render("hello", {}, {}, services=services)
    assert isinstance(result.error, ExtensionFailure)
    assert result.error.message == f"Extension hook '{event}' failed: hook broke"
    assert result.error.rule == "EXT"
    assert result.output == ("hello" if event == "program_end" else "")


def test_failing_event_hook_is_reported_to_on_error():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    errors = []
    ext.on_event("program_end", lambda vm: 1 / 0)
    ext.on_event("on_error", lambda vm, error: errors.append(error))
    result = render("x", {}, {}, services=services)
    assert errors == [result.error]
    assert result.error.step_index == 0


def test_failing_on_error_hook_is_still_a_runtime_error():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    ext.on_event("on_error", lambda vm, error: 1 / 0)
    result = render("{{ missing }}", {}, {}, services=services)
    assert isinstance(result.error, ExtensionFailure)


def test_macro_call_event_carries_rendered_pattern():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    calls = []

    @ext.on_event("macro_call")
    def record(vm, event):
        assert isinstance(event, MacroCallEvent)
        calls.append((event.name, event.block, event.pattern, event.span.line))

    source = '{{\n@m "$(_index_)=$(_item_)" | "$(_);"\nL[:] | ?m\n}}'
    assert render(source, {}, {"L": ["a", "b"]}, services=services).output == "0=a;1=b;"
    assert calls == [("m", 0, "0=a", 3), ("m", 0, "1=b", 3)]


def test_array_iter_event_fires_once_per_selection():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    seen = []
    ext.on_event("array_iter", lambda vm, event: seen.append((event.array, event.items)))
    render("{{ L[:]\nL[:] }}", {}, {"L": ["x", "y"]}, services=services)
    assert seen == [("L", ("x", "y")), ("L", ("x", "y"))]
    assert isinstance(ArrayIterEvent("L", (), None).items, tuple)


def test_output_filters_see_sink_writes_only():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    ext.output_filter(lambda vm, text: f"[{text}]")
    source = '{{\n@m "$(_item_)" | "<$(_)>"\nL[:] | ?m\n}}'
    result = render(source, {}, {"L": ["a"]}, services=services)
    assert result.output == "[<][a][>]"


def test_output_filters_chain_by_priority():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    ext.output_filter(lambda vm, text: text + "x", priority=0)
    ext.output_filter(lambda vm, text: text.upper(), priority=5)
    assert render("hi", {}, {}, services=services).output == "HIx"


def test_output_filter_must_return_text():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="test")
    ext.output_filter(lambda vm, text: None)
    result = render("hi", {}, {}, services=services)
    assert isinstance(result.error, ExtensionFailure)
    assert result.output == ""


def test_extension_failing_at_import_is_an_extension_error(tmp_path):
    path = write_extension(tmp_path, "broken.py", "raise RuntimeError('nope')\n")
    with pytest.raises(PipaExtensionError):
        load_runtime_services([str(path)])
