import pytest

from devmounter.ebpf import (
    AND_IMM32,
    EXIT,
    JNE_IMM,
    JNE_REG,
    MOV_IMM32,
    MOV_REG32,
    R0,
    R1,
    R2,
    R3,
    R4,
    R5,
    R6,
    WILDCARD,
    Instruction,
    Instructions,
    Rule,
    accept_block,
    load_instructions,
)

PROLOGUE = [
    Instruction(0x69, dst=R2, src=R1, constant=0),
    Instruction(0x61, dst=R3, src=R1, constant=0),
    Instruction(0x74, dst=R3, constant=16),
    Instruction(0x61, dst=R4, src=R1, constant=4),
    Instruction(0x61, dst=R5, src=R1, constant=8),
]

DEVICE_RULES = [
    Rule("c", WILDCARD, WILDCARD, "m", True),
    Rule("b", WILDCARD, WILDCARD, "m", True),
    Rule("c", 1, 3, "rwm", True),
    Rule("c", 1, 8, "rwm", True),
    Rule("c", 1, 7, "rwm", True),
    Rule("c", 5, 0, "rwm", True),
    Rule("c", 1, 5, "rwm", True),
    Rule("c", 1, 9, "rwm", True),
    Rule("c", 136, WILDCARD, "rwm", True),
    Rule("c", 5, 2, "rwm", True),
    Rule("c", 10, 200, "rwm", True),
]

DENY = [Instruction(MOV_IMM32, dst=R0, constant=0), Instruction(EXIT)]


def _device_filter(rules):
    program = Instructions(PROLOGUE)
    for rule in rules:
        program.append_rule(rule)
    program.finalize()
    return list(program)


def test_accept_block():
    assert accept_block(True) == [Instruction(MOV_IMM32, dst=R0, constant=1), Instruction(EXIT)]
    assert accept_block(False) == DENY


@pytest.mark.parametrize("insts", [None, []])
def test_load_rejects_empty(insts):
    with pytest.raises(ValueError, match="cannot be empty"):
        load_instructions(insts)


def test_load_strips_trailing_default_deny():
    program = _device_filter(DEVICE_RULES)
    loaded = load_instructions(program)
    assert list(loaded) == program[:-2]


def test_load_keeps_program_without_default_deny():
    program = PROLOGUE + list(accept_block(True))
    assert list(load_instructions(program)) == program


def test_groups_split_on_exit():
    program = Instructions(PROLOGUE + list(accept_block(True)) + [Instruction(MOV_IMM32)])
    groups = program.groups()
    assert [len(g) for g in groups] == [7, 1]
    assert all(g[-1].opcode == EXIT for g in groups[:-1])


def test_device_filter_groups():
    groups = load_instructions(_device_filter(DEVICE_RULES)).groups()
    assert len(groups) == len(DEVICE_RULES)
    assert all(g[-1].opcode == EXIT for g in groups)
    assert groups[0][: len(PROLOGUE)] == PROLOGUE


def test_append_rule_with_partial_access():
    program = Instructions(PROLOGUE)
    program.append_rule(Rule("c", 195, 0, "rw", True))
    assert program.groups()[-1] == [
        Instruction(JNE_IMM, dst=R2, offset=7, constant=2),
        Instruction(MOV_REG32, dst=R6, src=R3),
        Instruction(AND_IMM32, dst=R6, constant=6),
        Instruction(JNE_REG, dst=R6, src=R3, offset=4),
        Instruction(JNE_IMM, dst=R4, offset=3, constant=195),
        Instruction(JNE_IMM, dst=R5, offset=2, constant=0),
        Instruction(MOV_IMM32, dst=R0, constant=1),
        Instruction(EXIT),
    ]


def test_append_rule_wildcard_major_has_no_major_check():
    program = Instructions()
    program.append_rule(Rule("b", WILDCARD, WILDCARD, "rwm", False))
    assert list(program) == [
        Instruction(JNE_IMM, dst=R2, offset=2, constant=1),
        Instruction(MOV_IMM32, dst=R0, constant=0),
        Instruction(EXIT),
    ]


def test_append_same_size_rule_replaces_existing_block():
    program = Instructions(PROLOGUE)
    program.append_rule(Rule("c", 195, 0, "rwm", True))
    before = len(program.groups())
    program.append_rule(Rule("c", 195, 0, "rwm", False))
    groups = program.groups()
    assert len(groups) == before
    assert groups[-1][-2] == Instruction(MOV_IMM32, dst=R0, constant=0)


def test_append_rule_port_of_device_filter_case():
    instructions = load_instructions(_device_filter(DEVICE_RULES))
    instructions.append_rule(Rule("c", 195, 0, "rw", True))
    instructions.append_rule(Rule("c", 195, 0, "rwm", False))
    instructions.finalize()
    groups = instructions.groups()
    assert len(groups) == len(DEVICE_RULES) + 3
    assert groups[-1] == DENY
    deny_block = groups[-2]
    assert Instruction(JNE_IMM, dst=R4, offset=3, constant=195) in deny_block
    assert deny_block[-2:] == DENY
    allow_block = groups[-3]
    assert len(allow_block) == 8
    assert allow_block[-2] == Instruction(MOV_IMM32, dst=R0, constant=1)


def test_finalize_is_idempotent():
    program = Instructions(PROLOGUE)
    program.append_rule(Rule("c", 1, 3, "rwm", True))
    program.finalize()
    length = len(program)
    program.finalize()
    assert len(program) == length
    assert list(program[-2:]) == DENY


@pytest.mark.parametrize("rule, message", [
    (Rule("a", 1, 1, "rwm", True), "invalid type"),
    (Rule("c", 1, 1, "rwx", True), "unknown device access"),
    (Rule("c", 2**32, 1, "rwm", True), "invalid major"),
    (Rule("c", 1, 2**32, "rwm", True), "invalid minor"),
])
def test_append_rule_errors(rule, message):
    program = Instructions(PROLOGUE)
    with pytest.raises(ValueError, match=message):
        program.append_rule(rule)
    assert list(program) == PROLOGUE