"""Editing of cgroup device-filter eBPF programs."""

import dataclasses
import logging
from dataclasses import dataclass

from devmounter.util import DeviceType

log = logging.getLogger(__name__)

WILDCARD = -1
MAX_UINT32 = 2**32 - 1

R0, R1, R2, R3, R4, R5, R6, R7, R8, R9, R10 = range(11)

ALU_CLASS = 0x04
JUMP_CLASS = 0x05
IMM_SOURCE = 0x00
REG_SOURCE = 0x08

JNE_IMM = JUMP_CLASS | 0x50 | IMM_SOURCE
JNE_REG = JUMP_CLASS | 0x50 | REG_SOURCE
EXIT = JUMP_CLASS | 0x90
MOV_IMM32 = ALU_CLASS | 0xB0 | IMM_SOURCE
MOV_REG32 = ALU_CLASS | 0xB0 | REG_SOURCE
AND_IMM32 = ALU_CLASS | 0x50 | IMM_SOURCE

BPF_DEVCG_DEV_BLOCK = 1
BPF_DEVCG_DEV_CHAR = 2
BPF_DEVCG_ACC_MKNOD = 1
BPF_DEVCG_ACC_READ = 2
BPF_DEVCG_ACC_WRITE = 4
_ACC_RWM = BPF_DEVCG_ACC_READ | BPF_DEVCG_ACC_WRITE | BPF_DEVCG_ACC_MKNOD

_BPF_TYPES = {DeviceType.CHAR: BPF_DEVCG_DEV_CHAR, DeviceType.BLOCK: BPF_DEVCG_DEV_BLOCK}
_BPF_ACCESS = {"r": BPF_DEVCG_ACC_READ, "w": BPF_DEVCG_ACC_WRITE, "m": BPF_DEVCG_ACC_MKNOD}


@dataclass(frozen=True)
class Rule:
    """A device access rule; a major or minor of ``WILDCARD`` matches any number."""

    type: str
    major: int = WILDCARD
    minor: int = WILDCARD
    permissions: str = ""
    allow: bool = False


@dataclass(frozen=True)
class Instruction:
    """One eBPF instruction."""

    opcode: int
    dst: int = R0
    src: int = R0
    offset: int = 0
    constant: int = 0


def _jne_imm(dst, value):
    return Instruction(JNE_IMM, dst=dst, offset=-1, constant=value)


def _jne_reg(dst, src):
    return Instruction(JNE_REG, dst=dst, src=src, offset=-1)


def _return():
    return Instruction(EXIT)


def accept_block(accept):
    """Instructions that end the program allowing (``True``) or denying access."""
    return Instructions([Instruction(MOV_IMM32, dst=R0, constant=1 if accept else 0), _return()])


class Instructions(list):
    """A device-filter program that rules can be added to."""

    def _has_end_exit(self):
        if len(self) < 3:
            return False
        if self[-1].opcode != EXIT:
            return False
        if self[-2].dst != R0 and self[-2].constant != 0:
            return False
        return self[-3].opcode == EXIT

    def groups(self):
        """Split the program into blocks, each ending with an exit instruction."""
        result = []
        current = Instructions()
        for inst in self:
            current.append(inst)
            if inst.opcode == EXIT:
                result.append(current)
                current = Instructions()
        if current:
            result.append(current)
        return result

    def append_rule(self, rule):
        """Add a rule; a later block for the same device overrides an earlier one."""
        try:
            bpf_type = _BPF_TYPES[DeviceType(rule.type)]
        except (ValueError, KeyError):
            raise ValueError(f'invalid type "{rule.type}"') from None
        if rule.major > MAX_UINT32:
            raise ValueError(f"invalid major {rule.major}")
        if rule.minor > MAX_UINT32:
            raise ValueError(f"invalid minor {rule.minor}")
        has_major = rule.major >= 0
        has_minor = rule.minor >= 0
        access = 0
        for perm in rule.permissions:
            if perm not in _BPF_ACCESS:
                raise ValueError(f"unknown device access {perm!r}")
            access |= _BPF_ACCESS[perm]
        has_access = access != _ACC_RWM

        groups = self.groups()
        index = -1
        for i in range(len(groups) - 1, -1, -1):
            found_type = found_major = found_minor = False
            for inst in groups[i]:
                if inst.opcode != JNE_IMM:
                    continue
                if not found_type and inst.dst == R2 and inst.constant == bpf_type:
                    found_type = True
                elif not found_major and inst.dst == R4 and inst.constant == rule.major:
                    found_major = True
                elif not found_minor and inst.dst == R5 and inst.constant == rule.minor:
                    found_minor = True
            if found_type and found_major and found_minor:
                index = i
                break

        insert = [_jne_imm(R2, bpf_type)]
        if has_access:
            insert += [
                Instruction(MOV_REG32, dst=R6, src=R3),
                Instruction(AND_IMM32, dst=R6, constant=access),
                _jne_reg(R6, R3),
            ]
        if has_major:
            insert.append(_jne_imm(R4, rule.major))
        if has_minor:
            insert.append(_jne_imm(R5, rule.minor))
        insert += accept_block(rule.allow)

        last = len(insert) - 1
        insert = Instructions(
            dataclasses.replace(inst, offset=last - i) if inst.opcode in (JNE_IMM, JNE_REG)
            else inst
            for i, inst in enumerate(insert)
        )

        if index < 0 or len(groups[index]) > len(insert):
            log.debug("insert instructions at group %d: %s", len(groups), insert)
            groups.append(insert)
        else:
            log.debug("update instructions at group %d: %s", index, insert)
            groups[index] = insert

        self[:] = [inst for group in groups for inst in group]

    def finalize(self):
        """Terminate the program with a default deny unless it already ends with one."""
        if not self._has_end_exit():
            self.extend(accept_block(False))


def load_instructions(insts):
    """Copy a program for editing, dropping its trailing default-deny block."""
    if not insts:
        raise ValueError("asm.Instructions cannot be empty")
    result = Instructions(insts)
    if result._has_end_exit():
        del result[-2:]
    return result