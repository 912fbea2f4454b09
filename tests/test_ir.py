import pytest

from ir import (
    BeginArrayIter,
    CommentOp,
    DuplicateMacro,
    EmitLiteral,
    EmitVar,
    MalformedInterpolation,
    UnknownMacro,
    format_ir,
    lower,
)
from lexer import tokenize
from parser import parse


def compile_source(source):
    return lower(source, parse(tokenize(source)))


def opcodes(program):
    return [instruction.opcode for instruction in program.instructions]


def test_host_text_becomes_literal():
    program = compile_source("just text")
    assert program.instructions == (EmitLiteral(span=program.instructions[0].span, text="just text"),)


def test_interpolation_is_split_into_literals_and_vars():
    program = compile_source('{{ "Hello, $(name)!" }}')
    kinds = [(type(i), getattr(i, "text", None), getattr(i, "name", None)) for i in program.instructions]
    assert kinds == [
        (EmitLiteral, "Hello, ", None),
        (EmitVar, None, "name"),
        (EmitLiteral, "!", None),
    ]


def test_interpolation_span_points_into_the_string():
    program = compile_source('{{ "ab$(name)" }}')
    var = program.instructions[1]
    assert isinstance(var, EmitVar)
    # the string opens at offset 3, its body at 4; "$(name)" starts two characters in
    assert (var.span.start, var.span.end) == (6, 13)
    assert var.span.column == 7


def test_escapes_are_decoded():
    program = compile_source(r'{{ "a\"b\n\$(x)\q" }}')
    assert len(program.instructions) == 1
    assert program.instructions[0].text == 'a"b\n$(x)\\q'


def test_dollar_without_paren_is_literal():
    program = compile_source('{{ "cost: $5" }}')
    assert [i.text for i in program.instructions] == ["cost: $5"]


def test_unclosed_interpolation_is_semantic_error():
    with pytest.raises(MalformedInterpolation) as info:
        compile_source('{{ "$(name" }}')
    assert "missing ')'" in info.value.message


def test_interpolation_requires_identifier():
    with pytest.raises(MalformedInterpolation):
        compile_source('{{ "$(1x)" }}')
    with pytest.raises(MalformedInterpolation):
        compile_source('{{ "$()" }}')


def test_variables_are_not_checked_at_compile_time():
    program = compile_source('{{ "$(never_defined)" }}')
    assert opcodes(program) == ["EMIT_VAR"]


def test_array_pipe_is_desugared_into_brackets():
    program = compile_source('{{\n@m "$(_item_)" | "$(_)"\nLIST[:] | ?m\n}}')
    assert opcodes(program) == ["BEGIN_ARRAY_ITER", "BEGIN_MACRO_CALL", "END_MACRO_CALL", "END_ARRAY_ITER"]
    assert program.instructions[0].array == "LIST"
    macro = program.macros.lookup(0, "m")
    assert [i.opcode for i in macro.pattern] == ["EMIT_VAR"]
    assert [i.opcode for i in macro.body] == ["EMIT_VAR"]


def test_scalar_pipe_binds_item_and_index_in_a_scope():
    program = compile_source('{{\n@m "$(_item_)" | "$(_)"\nname | ?m\n}}')
    assert opcodes(program) == [
        "PUSH_SCOPE",
        "BEGIN_CAPTURE",
        "EMIT_VAR",
        "END_CAPTURE",
        "BEGIN_CAPTURE",
        "EMIT_LITERAL",
        "END_CAPTURE",
        "BEGIN_MACRO_CALL",
        "END_MACRO_CALL",
        "POP_SCOPE",
    ]


def test_bare_array_select_emits_each_item():
    program = compile_source("{{ LIST[:] }}")
    assert opcodes(program) == ["BEGIN_ARRAY_ITER", "EMIT_VAR", "END_ARRAY_ITER"]
    assert program.instructions[1].name == "_item_"


def test_forward_reference_resolves():
    program = compile_source('{{\nLIST[:] | ?later\n@later "$(_item_)" | "$(_)"\n}}')
    assert program.macros.get(0, "later") is not None


def test_unknown_macro_fails_generation():
    with pytest.raises(UnknownMacro) as info:
        compile_source("{{\nLIST[:] | ?missing\n}}")
    assert info.value.name == "missing"
    assert info.value.span.line == 2


def test_macros_are_scoped_to_their_block():
    source = '{{ @m "a" | "b" }}{{ LIST[:] | ?m }}'
    with pytest.raises(UnknownMacro):
        compile_source(source)


def test_same_macro_name_in_different_blocks_is_allowed():
    program = compile_source('{{ @m "a" | "b" }}{{ @m "c" | "d" }}')
    assert len(program.macros) == 2


def test_duplicate_macro_reports_both_spans():
    source = '{{\n@m "a" | "b"\n@m "c" | "d"\n}}'
    with pytest.raises(DuplicateMacro) as info:
        compile_source(source)
    error = info.value
    assert error.name == "m"
    assert error.first_span.line == 2
    assert error.dup_span.line == 3


def test_comments_are_kept_for_the_dump():
    program = compile_source("{{ # hi\n}}")
    assert isinstance(program.instructions[0], CommentOp)
    assert program.instructions[0].text == "hi"


def test_instruction_order_follows_source():
    program = compile_source('A{{ "B" }}C{{ x }}D')
    assert [getattr(i, "text", getattr(i, "name", None)) for i in program.instructions] == ["A", "B", "C", "x", "D"]


def test_format_ir_indents_brackets():
    program = compile_source('{{ @m "$(_item_)" | "<$(_)>"\nL[:] | ?m }}')
    assert format_ir(program) == (
        "macros (1):\n"
        "  @m (block 0, line 1):\n"
        "    pattern:\n"
        "      EMIT_VAR _item_\n"
        "    body:\n"
        '      EMIT_LITERAL "<"\n'
        "      EMIT_VAR _\n"
        '      EMIT_LITERAL ">"\n'
        "program (4 instructions):\n"
        "  BEGIN_ARRAY_ITER L\n"
        "    BEGIN_MACRO_CALL ?m\n"
        "    END_MACRO_CALL\n"
        "  END_ARRAY_ITER\n"
    )


def test_format_ir_quotes_literals():
    program = compile_source('{{ "a\\n\\"b\\"" }}')
    assert 'EMIT_LITERAL "a\\n\\"b\\""' in format_ir(program)


def test_array_iteration_carries_span_of_selection():
    program = compile_source("{{ ITEMS[:] }}")
    begin = program.instructions[0]
    assert isinstance(begin, BeginArrayIter)
    assert (begin.span.start, begin.span.end) == (3, 11)
