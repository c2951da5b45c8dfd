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
import pytest
import base58
import struct

from bitcoin_protocol import *
from vault_errors import ValidationError


def _two_in_two_out() -> RawTransaction:
    return RawTransaction(
        version=1,
        locktime=0,
        inputs=[
            TxInput(txid=bytes.fromhex("aa" * 32), vout=0),
            TxInput(txid=bytes.fromhex("bb" * 32), vout=1, sequence=0xFFFFFFFE),
        ],
        outputs=[
            TxOutput(value=40_000, script_pubkey=p2pkh_script(bytes(20))),
            TxOutput(value=35_000, script_pubkey=p2pkh_script(b"\x11" * 20)),
        ],
    )


class TestHashes:
    """Known vectors for the hash helpers."""

    def test_sha256_empty(self):
        assert sha256(b"").hex() == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_hash256_empty(self):
        assert hash256(b"").hex() == (
            "5df6e0e2761359d30a8275058e299fcc0381534545f55cf43e41983f5d4c9456"
        )

    def test_hash160_empty(self):
        assert hash160(b"").hex() == "b472a266d0bd89c13706a4132ccfb16f7c3b9fcb"

    def test_iterated_sha256(self):
        assert iterated_sha256(b"x", 0) == b"x"
        assert iterated_sha256(b"x", 2) == sha256(sha256(b"x"))


class TestEncodings:
    """CompactSize, script numbers and minimal pushes."""

    @pytest.mark.parametrize("n,expected", [
        (0, "00"),
        (0xfc, "fc"),
        (0xfd, "fdfd00"),
        (0xffff, "fdffff"),
        (0x10000, "fe00000100"),
    ])
    def test_compact_size(self, n, expected):
        assert compact_size(n).hex() == expected

    @pytest.mark.parametrize("n,expected", [
        (0, ""),
        (1, "01"),
        (127, "7f"),
        (128, "8000"),
        (255, "ff00"),
        (256, "0001"),
        (1024, "0004"),
        (-1, "81"),
        (-128, "8080"),
        (850_000, "50f80c"),
    ])
    def test_script_num(self, n, expected):
        assert encode_script_num(n).hex() == expected
        assert decode_script_num(bytes.fromhex(expected)) == n

    def test_push_data_small_ints_use_opcodes(self):
        assert push_data(b"") == b"\x00"
        assert push_data(b"\x05") == b"\x55"
        assert push_data(b"\x10") == b"\x60"
        assert push_data(b"\x81") == b"\x4f"
        assert push_data(b"\x11") == b"\x01\x11"

    def test_push_data_sizes(self):
        assert push_data(b"\xaa" * 75)[:1] == b"\x4b"
        assert push_data(b"\xaa" * 76)[:2] == b"\x4c\x4c"
        assert push_data(b"\xaa" * 1024)[:3] == b"\x4d\x00\x04"
        assert len(push_data(b"\xaa" * 1024)) == 1027

    def test_push_int(self):
        assert push_int(0) == b"\x00"
        assert push_int(16) == b"\x60"
        assert push_int(-1) == b"\x4f"
        assert push_int(17) == b"\x01\x11"
        assert push_int(1024) == bytes.fromhex("020004")


class TestAddresses:
    """Base58check P2PKH handling."""

    def test_zero_hash_mainnet_address(self):
        assert p2pkh_address(bytes(20)) == "1111111111111111111114oLvT2"

    def test_testnet_prefix(self):
        addr = p2pkh_address(b"\x42" * 20, "testnet")
        assert addr[0] in "mn"
        assert decode_p2pkh_address(addr) == {
            "network": "testnet", "pubkey_hash": b"\x42" * 20,
        }

    def test_address_to_script(self):
        script = address_to_script(p2pkh_address(b"\x07" * 20))
        assert script == bytes.fromhex("76a914" + "07" * 20 + "88ac")

    def test_bad_checksum_rejected(self):
        with pytest.raises(ValidationError, match="Invalid address"):
            decode_p2pkh_address("1111111111111111111114oLvT3")

    def test_bad_character_rejected(self):
        with pytest.raises(ValidationError):
            decode_p2pkh_address("0OIl")

    def test_p2sh_version_rejected(self):
        p2sh = base58.b58encode_check(b"\x05" + bytes(20)).decode()
        with pytest.raises(ValidationError, match="P2PKH"):
            decode_p2pkh_address(p2sh)

    def test_unknown_network(self):
        with pytest.raises(ValidationError, match="Unknown network"):
            p2pkh_address(bytes(20), "regtest")

    def test_p2pkh_script_needs_20_bytes(self):
        with pytest.raises(ValidationError):
            p2pkh_script(bytes(19))


class TestUtxo:
    """Indexer and camelCase field names both normalise to Utxo."""

    def test_indexer_fields(self):
        u = Utxo.from_dict({"tx_hash": "ab" * 32, "tx_pos": 1, "value": 5000, "height": 0})
        assert u.tx_hash == bytes.fromhex("ab" * 32)
        assert u.tx_pos == 1
        assert not u.confirmed

    def test_camel_case_fields(self):
        u = Utxo.from_dict({
            "txHash": "cd" * 32, "outputIndex": 2, "value": 7000,
            "confirmationHeight": 800_000,
        })
        assert u.tx_pos == 2
        assert u.confirmed
        assert Utxo.from_dict(u.to_dict()) == u

    @pytest.mark.parametrize("bad", [
        {"tx_pos": 0, "value": 1},
        {"tx_hash": "zz" * 32, "tx_pos": 0, "value": 1},
        {"tx_hash": "ab" * 31, "tx_pos": 0, "value": 1},
        {"tx_hash": "ab" * 32, "tx_pos": 0, "value": -5},
    ])
    def test_malformed_rejected(self, bad):
        with pytest.raises(ValidationError):
            Utxo.from_dict(bad)


class TestRawTransaction:
    """Legacy serialization layout."""

    def test_layout(self):
        tx = _two_in_two_out()
        raw = tx.serialize()
        assert raw[:4] == struct.pack("<I", 1)
        assert raw[4] == 2
        # first input: reversed txid, vout, empty scriptSig, final sequence
        assert raw[5:37] == bytes.fromhex("aa" * 32)[::-1]
        assert raw[37:41] == struct.pack("<I", 0)
        assert raw[41] == 0
        assert raw[42:46] == b"\xff\xff\xff\xff"
        assert raw[-4:] == struct.pack("<I", 0)

    def test_txid_is_reversed_hash256(self):
        tx = _two_in_two_out()
        assert tx.txid == hash256(tx.serialize())[::-1].hex()

    def test_script_sig_is_length_prefixed(self):
        inp = TxInput(txid=bytes(32), vout=0, script_sig=b"\x51" * 300)
        assert inp.serialize()[36:39] == b"\xfd\x2c\x01"

    def test_hash_outputs(self):
        tx = _two_in_two_out()
        assert hash_outputs(tx.outputs) == hash256(
            tx.outputs[0].serialize() + tx.outputs[1].serialize()
        )


class TestForkIdSighash:
    """BIP-143 preimage with SIGHASH_FORKID."""

    SCRIPT = bytes.fromhex("a820" + "00" * 32 + "87")

    def test_preimage_layout(self):
        tx = _two_in_two_out()
        pre = ForkIdSighash(tx, 1).preimage(self.SCRIPT, 12_345)
        assert len(pre) == 156 + 1 + len(self.SCRIPT)
        assert pre[:4] == struct.pack("<I", 1)
        assert pre[4:36] == hash256(tx.inputs[0].outpoint + tx.inputs[1].outpoint)
        assert pre[36:68] == hash256(b"\xff\xff\xff\xff" + b"\xfe\xff\xff\xff")
        assert pre[68:104] == tx.inputs[1].outpoint
        assert pre[104] == len(self.SCRIPT)
        off = 105 + len(self.SCRIPT)
        assert pre[off:off + 8] == struct.pack("<Q", 12_345)
        assert pre[off + 8:off + 12] == b"\xfe\xff\xff\xff"
        assert pre[off + 12:off + 44] == hash_outputs(tx.outputs)
        assert pre[-8:-4] == struct.pack("<I", 0)
        assert pre[-4:] == b"\x41\x00\x00\x00"

    def test_bip143_p2wpkh_vector(self, parse_tx):
        # BIP-143 "Native P2WPKH" example; FORKID changes only the hash type
        tx = parse_tx(bytes.fromhex(
            "0100000002fff7f7881a8099afa6940d42d1e7f6362bec38171ea3edf433541db4"
            "e4ad969f0000000000eeffffffef51e1b804cc89d182d279655c3aa89e815b1b30"
            "9fe287d9b2b55d57b90ec68a0100000000ffffffff02202cb206000000001976a9"
            "148280b37df378db99f66f85c95a783a76ac7a6d5988ac9093510d000000001976"
            "a9143bde42dbee7e4dbe6a21b2d50ce2f0167faa815988ac11000000"
        ))
        script_code = bytes.fromhex("76a9141d0f172a0ecb48aee1be1f2687d2963ae33f71a188ac")
        expected = bytes.fromhex(
            "01000000"
            "96b827c8483d4e9b96712b6713a7b68d6e8003a781feba36c31143470b4efd37"
            "52b0a642eea2fb7ae638c36f6252b6750293dbe574a806984b8e4d8548339a3b"
            "ef51e1b804cc89d182d279655c3aa89e815b1b309fe287d9b2b55d57b90ec68a01000000"
            "1976a9141d0f172a0ecb48aee1be1f2687d2963ae33f71a188ac"
            "0046c32300000000"
            "ffffffff"
            "863ef3e1a92afbfdb97f31ad0fc7683ee943e9abcf2501590ff8f6551f47e5e5"
            "11000000"
        )
        pre = ForkIdSighash(tx, 1).preimage(script_code, 600_000_000)
        assert pre[:-4] == expected
        assert pre[-4:] == b"\x41\x00\x00\x00"

    def test_forkid_always_set(self):
        tx = _two_in_two_out()
        calc = ForkIdSighash(tx, 0)
        assert calc.preimage(self.SCRIPT, 1, ForkIdSighash.SIGHASH_ALL) == \
            calc.preimage(self.SCRIPT, 1)

    def test_anyonecanpay_zeroes_prevouts_and_sequences(self):
        tx = _two_in_two_out()
        hash_type = ForkIdSighash.SIGHASH_ALL | ForkIdSighash.SIGHASH_ANYONECANPAY
        pre = ForkIdSighash(tx, 0).preimage(self.SCRIPT, 1, hash_type)
        assert pre[4:68] == b"\x00" * 64
        assert pre[-4:] == b"\xc1\x00\x00\x00"

    def test_single_commits_to_matching_output(self):
        tx = _two_in_two_out()
        pre = ForkIdSighash(tx, 1).preimage(self.SCRIPT, 1, ForkIdSighash.SIGHASH_SINGLE)
        off = 105 + len(self.SCRIPT) + 12
        assert pre[36:68] == b"\x00" * 32
        assert pre[off:off + 32] == hash256(tx.outputs[1].serialize())

    def test_none_zeroes_outputs(self):
        tx = _two_in_two_out()
        pre = ForkIdSighash(tx, 0).preimage(self.SCRIPT, 1, ForkIdSighash.SIGHASH_NONE)
        off = 105 + len(self.SCRIPT) + 12
        assert pre[off:off + 32] == b"\x00" * 32

    def test_digest_binds_outputs(self):
        tx = _two_in_two_out()
        before = ForkIdSighash(tx, 0).compute(self.SCRIPT, 50_000)
        tx.outputs[0].value -= 1
        after = ForkIdSighash(tx, 0).compute(self.SCRIPT, 50_000)
        assert before != after

    def test_compute_is_hash256_of_preimage(self):
        tx = _two_in_two_out()
        calc = ForkIdSighash(tx, 0)
        assert calc.compute(self.SCRIPT, 9) == hash256(calc.preimage(self.SCRIPT, 9))

    def test_input_index_out_of_range(self):
        with pytest.raises(ValidationError, match="out of range"):
            ForkIdSighash(_two_in_two_out(), 2)
