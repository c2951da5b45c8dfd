# Copyright (c) 2026 The Quantum Vault Authors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
"""
Shared fixtures: a minimal stack evaluator for the opcodes the vault
scripts use, and a raw-transaction parser for inspecting built sweeps.
"""
import struct
from typing import Callable, List, Optional

import pytest

from bitcoin_protocol import (
    RawTransaction,
    TxInput,
    TxOutput,
    decode_script_num,
    encode_script_num,
    hash160,
    hash256,
    sha256,
)
from vault_script import Op, Opcode, PushData, parse_script


class ScriptFailure(Exception):
    pass


def _as_bool(item: bytes) -> bool:
    for i, byte in enumerate(item):
        if byte:
            # negative zero is false
            return not (i == len(item) - 1 and byte == 0x80)
    return False


def _trunc_div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def _trunc_mod(a: int, b: int) -> int:
    return a - b * _trunc_div(a, b)


class ScriptEvaluator:
    """
    Runs an unlocking script then a locking script on one stack.

    ``checker(signature, pubkey) -> bool`` stands in for CHECKSIG;
    ``lock_time`` is the spending transaction's nLockTime for CLTV.
    """

    def __init__(
        self,
        checker: Optional[Callable[[bytes, bytes], bool]] = None,
        lock_time: int = 0,
    ) -> None:
        self.checker = checker
        self.lock_time = lock_time
        self.stack: List[bytes] = []

    def evaluate(self, unlocking: bytes, locking: bytes) -> bool:
        self.stack = []
        try:
            for ins in parse_script(unlocking):
                if isinstance(ins, Op) and ins.opcode > Opcode.OP_16:
                    raise ScriptFailure("unlocking script must be push-only")
            self._run(unlocking)
            self._run(locking)
        except ScriptFailure:
            return False
        return bool(self.stack) and _as_bool(self.stack[-1])

    # ---- helpers ------------------------------------------------------
    def _pop(self) -> bytes:
        if not self.stack:
            raise ScriptFailure("stack underflow")
        return self.stack.pop()

    def _pop_num(self) -> int:
        return decode_script_num(self._pop())

    def _push_num(self, n: int) -> None:
        self.stack.append(encode_script_num(n))

    def _push_bool(self, flag: bool) -> None:
        self.stack.append(b"\x01" if flag else b"")

    def _run(self, script: bytes) -> None:
        executing: List[bool] = []
        for ins in parse_script(script):
            active = all(executing)
            if isinstance(ins, PushData):
                if active:
                    self.stack.append(ins.data)
                continue
            op = ins.opcode
            if op in (Opcode.OP_IF, Opcode.OP_NOTIF):
                flag = False
                if active:
                    flag = _as_bool(self._pop())
                    if op == Opcode.OP_NOTIF:
                        flag = not flag
                executing.append(flag)
                continue
            if op == Opcode.OP_ELSE:
                if not executing:
                    raise ScriptFailure("OP_ELSE without OP_IF")
                executing[-1] = not executing[-1]
                continue
            if op == Opcode.OP_ENDIF:
                if not executing:
                    raise ScriptFailure("OP_ENDIF without OP_IF")
                executing.pop()
                continue
            if active:
                self._step(op)
        if executing:
            raise ScriptFailure("unbalanced conditional")

    def _step(self, op: Opcode) -> None:
        if op == Opcode.OP_0:
            self.stack.append(b"")
        elif op == Opcode.OP_1NEGATE:
            self._push_num(-1)
        elif Opcode.OP_1 <= op <= Opcode.OP_16:
            self._push_num(op - Opcode.OP_1 + 1)
        elif op == Opcode.OP_NOP:
            pass
        elif op == Opcode.OP_VERIFY:
            if not _as_bool(self._pop()):
                raise ScriptFailure("OP_VERIFY failed")
        elif op == Opcode.OP_RETURN:
            raise ScriptFailure("OP_RETURN")
        elif op == Opcode.OP_DUP:
            top = self._pop()
            self.stack += [top, top]
        elif op == Opcode.OP_DROP:
            self._pop()
        elif op == Opcode.OP_SWAP:
            a = self._pop()
            b = self._pop()
            self.stack += [a, b]
        elif op == Opcode.OP_SIZE:
            if not self.stack:
                raise ScriptFailure("stack underflow")
            self._push_num(len(self.stack[-1]))
        elif op in (Opcode.OP_EQUAL, Opcode.OP_EQUALVERIFY):
            equal = self._pop() == self._pop()
            if op == Opcode.OP_EQUALVERIFY:
                if not equal:
                    raise ScriptFailure("OP_EQUALVERIFY failed")
            else:
                self._push_bool(equal)
        elif op == Opcode.OP_NOT:
            self._push_bool(self._pop_num() == 0)
        elif op in (Opcode.OP_ADD, Opcode.OP_SUB, Opcode.OP_MUL,
                    Opcode.OP_DIV, Opcode.OP_MOD):
            b = self._pop_num()
            a = self._pop_num()
            if op in (Opcode.OP_DIV, Opcode.OP_MOD) and b == 0:
                raise ScriptFailure("division by zero")
            result = {
                Opcode.OP_ADD: lambda: a + b,
                Opcode.OP_SUB: lambda: a - b,
                Opcode.OP_MUL: lambda: a * b,
                Opcode.OP_DIV: lambda: _trunc_div(a, b),
                Opcode.OP_MOD: lambda: _trunc_mod(a, b),
            }[op]()
            self._push_num(result)
        elif op == Opcode.OP_WITHIN:
            upper = self._pop_num()
            lower = self._pop_num()
            x = self._pop_num()
            self._push_bool(lower <= x < upper)
        elif op == Opcode.OP_SHA256:
            self.stack.append(sha256(self._pop()))
        elif op == Opcode.OP_HASH160:
            self.stack.append(hash160(self._pop()))
        elif op == Opcode.OP_HASH256:
            self.stack.append(hash256(self._pop()))
        elif op == Opcode.OP_CHECKLOCKTIMEVERIFY:
            if not self.stack:
                raise ScriptFailure("stack underflow")
            required = decode_script_num(self.stack[-1])
            if required < 0:
                raise ScriptFailure("negative lock time")
            if (required < 500_000_000) != (self.lock_time < 500_000_000):
                raise ScriptFailure("lock time type mismatch")
            if self.lock_time < required:
                raise ScriptFailure("lock time not reached")
        elif op in (Opcode.OP_CHECKSIG, Opcode.OP_CHECKSIGVERIFY):
            pubkey = self._pop()
            signature = self._pop()
            ok = bool(self.checker and self.checker(signature, pubkey))
            if op == Opcode.OP_CHECKSIGVERIFY:
                if not ok:
                    raise ScriptFailure("OP_CHECKSIGVERIFY failed")
            else:
                self._push_bool(ok)
        else:
            raise ScriptFailure(f"unsupported opcode {op.name}")


def parse_raw_tx(raw: bytes) -> RawTransaction:
    """Inverse of ``RawTransaction.serialize`` for the small txs built here."""
    pos = 0

    def read(n: int) -> bytes:
        nonlocal pos
        chunk = raw[pos:pos + n]
        pos += n
        return chunk

    def read_varint() -> int:
        first = read(1)[0]
        if first < 0xfd:
            return first
        size = {0xfd: 2, 0xfe: 4, 0xff: 8}[first]
        return int.from_bytes(read(size), "little")

    version = struct.unpack("<I", read(4))[0]
    inputs = []
    for _ in range(read_varint()):
        txid = read(32)[::-1]
        vout = struct.unpack("<I", read(4))[0]
        script_sig = read(read_varint())
        sequence = struct.unpack("<I", read(4))[0]
        inputs.append(TxInput(txid=txid, vout=vout, script_sig=script_sig,
                              sequence=sequence))
    outputs = []
    for _ in range(read_varint()):
        value = struct.unpack("<Q", read(8))[0]
        outputs.append(TxOutput(value=value, script_pubkey=read(read_varint())))
    locktime = struct.unpack("<I", read(4))[0]
    assert pos == len(raw), "trailing bytes after locktime"
    return RawTransaction(version=version, locktime=locktime,
                          inputs=inputs, outputs=outputs)


@pytest.fixture
def evaluate():
    """``evaluate(unlocking, locking, checker=None, lock_time=0) -> bool``."""
    def _evaluate(unlocking, locking, checker=None, lock_time=0):
        return ScriptEvaluator(checker, lock_time).evaluate(unlocking, locking)
    return _evaluate


@pytest.fixture
def parse_tx():
    return parse_raw_tx
