import math
import random
import re

import pytest

from lupa import LuaRuntime

from vh_gateway.luaaes import DECODER_NAMES, SBOX, decrypt_ctr, encrypt_ctr, render_decoder
from vh_gateway.noise import FillerGenerator, NoFiller, SequentialIdentifiers
from vh_gateway.session_key import RotatingSessionKey
from vh_gateway.transform import (
    CORE_BANNER,
    XOR_FUNCTION,
    DeviceSaltStage,
    SessionCipherStage,
    ShiftStage,
    TransformPipeline,
    XorStage,
    device_salt,
    reveal,
)

SAMPLE = (
    'local Players = game:GetService("Players")\n'
    "local t = {1, 2, 3}\n"
    "for i, v in ipairs(t) do print(i, v) end\n"
    'print("VanderHub loaded")\n'
)
UNICODE = '-- ünïcødé ✓\nprint("héllo")\n'


def _keys():
    return RotatingSessionKey("test-secret", clock=lambda: 1_700_000_000.0)


def _golden(stages, seed=7, **kwargs):
    return TransformPipeline(
        stages,
        rng_factory=lambda: random.Random(seed),
        identifier_factory=lambda rng: SequentialIdentifiers(),
        filler_factory=lambda rng: NoFiller(),
        **kwargs,
    )


def test_xor_round_trip():
    out = TransformPipeline([XorStage()]).protect(SAMPLE)
    assert out.startswith(CORE_BANNER + "\n")
    assert "VanderHub loaded" not in out
    assert reveal(out) == SAMPLE


def test_xor_then_shift_round_trip():
    out = TransformPipeline([XorStage(), ShiftStage()]).protect(SAMPLE)
    assert not out.startswith(CORE_BANNER)
    assert reveal(out) == SAMPLE


@pytest.mark.parametrize("tier", ["standard", "device", "labyrinth"])
def test_tier_round_trip(tier):
    pipeline = TransformPipeline.for_tier(tier, session_keys=_keys())
    out = pipeline.protect(UNICODE, device_id="dev-1")
    assert pipeline.tier == tier
    assert reveal(out) == UNICODE


def test_device_salt_is_embedded():
    out = _golden([DeviceSaltStage()]).protect("x", device_id="dev-1")
    assert device_salt("dev-1") == sum(b"dev-1") % 256
    assert f"local _v3={device_salt('dev-1')}" in out.splitlines()
    assert reveal(out) == "x"


def test_handshake_delivery_needs_session_key_to_reveal():
    keys = _keys()
    pipeline = TransformPipeline.for_tier("labyrinth", session_key_delivery="handshake", session_keys=keys)
    assert pipeline.needs_handshake_url
    out = pipeline.protect(SAMPLE, handshake_url="https://gw.example/v1/handshake?key=k&hwid=dev-1")

    assert 'game:HttpGet("https://gw.example/v1/handshake?key=k&hwid=dev-1")' in out
    assert keys.current_key() not in out
    with pytest.raises(ValueError):
        reveal(out)
    assert reveal(out, session_key=keys.current_key()) == SAMPLE


def test_handshake_delivery_without_url_is_an_error():
    pipeline = TransformPipeline.for_tier("labyrinth", session_key_delivery="handshake", session_keys=_keys())
    with pytest.raises(ValueError):
        pipeline.protect(SAMPLE)


def test_session_cipher_requires_key_source():
    with pytest.raises(ValueError):
        TransformPipeline([XorStage(), SessionCipherStage()])


def test_unknown_tier():
    with pytest.raises(ValueError):
        TransformPipeline.for_tier("platinum")


def test_empty_payload_is_returned_unchanged():
    for tier in ("standard", "device", "labyrinth"):
        assert TransformPipeline.for_tier(tier, session_keys=_keys()).protect("") == ""
    assert reveal("") == ""


def test_output_differs_between_calls():
    pipeline = TransformPipeline.for_tier("standard")
    a, b = pipeline.protect(SAMPLE), pipeline.protect(SAMPLE)
    assert a != b
    assert reveal(a) == reveal(b) == SAMPLE


def test_identifiers_are_fresh_per_call():
    pipeline = TransformPipeline([XorStage()])
    pattern = re.compile(r"\b_[A-Za-z]{10}\b")
    a = set(pattern.findall(pipeline.protect(SAMPLE)))
    b = set(pattern.findall(pipeline.protect(SAMPLE)))
    assert len(a) >= 8
    assert not a & b


def test_tables_are_chunked():
    payload = "x" * 1234
    out = _golden([XorStage()]).protect(payload)
    chunks = re.findall(r"ipairs\(\{([0-9,]*)\}\)", out)
    assert len(chunks) == math.ceil(1234 / 500)
    assert all(len(c.split(",")) <= 500 for c in chunks)


def test_chunk_size_is_configurable():
    out = _golden([XorStage()], chunk_size=100).protect("y" * 250)
    assert len(re.findall(r"ipairs\(", out)) == 3
    assert reveal(out) == "y" * 250


def test_golden_structure_of_xor_stage():
    lines = _golden([XorStage()]).protect("ab").splitlines()
    assert lines[0] == CORE_BANNER
    key = int(re.fullmatch(r"local _v2=(\d+)", lines[1]).group(1))
    assert lines[2] == "local _v1={}"
    assert lines[3] == "for _v7,_v8 in ipairs({%d,%d}) do table.insert(_v1,_v8) end" % (
        ord("a") ^ key, ord("b") ^ key,
    )
    assert lines[4] == "local _v3={}"
    assert lines[5] == XOR_FUNCTION.format(X="_v5", A="_v9", B="_v10", R="_v11", M="_v12")
    assert lines[6] == "for _v4=1,#_v1 do _v3[_v4]=string.char(_v5(_v1[_v4],_v2)) end"
    assert lines[7] == "local _v6=loadstring or load"
    assert lines[8] == "_v6(table.concat(_v3))()"
    assert len(lines) == 9


def test_golden_structure_of_shift_stage():
    lines = _golden([ShiftStage()]).protect("a").splitlines()
    key = int(re.fullmatch(r"local _v2=(\d+)", lines[1]).group(1))
    assert lines[3] == "for _v6,_v7 in ipairs({%d}) do table.insert(_v1,_v7) end" % ((ord("a") + key) % 256)
    assert lines[5] == "for _v4=1,#_v1 do _v3[_v4]=string.char((_v1[_v4]-_v2)%256) end"


def test_key_ranges():
    for seed in range(200):
        xor_line = _golden([XorStage()], seed=seed).protect("a").splitlines()[1]
        shift_line = _golden([ShiftStage()], seed=seed).protect("a").splitlines()[1]
        assert 50 <= int(xor_line.split("=")[1]) <= 249
        assert 10 <= int(shift_line.split("=")[1]) <= 109


def test_filler_is_interleaved():
    base = _golden([XorStage()]).protect("ab")
    noisy = TransformPipeline(
        [XorStage()],
        rng_factory=lambda: random.Random(7),
        filler_factory=lambda rng: FillerGenerator(rng, count=5),
    ).protect("ab")
    assert len(noisy.splitlines()) == len(base.splitlines()) + 5
    assert noisy.startswith(CORE_BANNER + "\n")
    assert reveal(noisy) == "ab"


def test_filler_survives_layering():
    pipeline = TransformPipeline(
        [XorStage(), ShiftStage(), SessionCipherStage()],
        session_keys=_keys(),
        filler_count=12,
    )
    assert reveal(pipeline.protect(SAMPLE)) == SAMPLE


def test_reveal_rejects_plain_source():
    with pytest.raises(ValueError):
        reveal("print('not protected')")


def test_aes_sbox_known_values():
    assert SBOX[0x00] == 0x63
    assert SBOX[0x01] == 0x7C
    assert SBOX[0x53] == 0xED
    assert SBOX[0xFF] == 0x16
    assert sorted(SBOX) == list(range(256))


def test_aes_ctr_round_trip_and_nonce():
    nonce, ct = encrypt_ctr(b"payload bytes", "0123456789abcdef")
    assert len(nonce) == 16
    assert ct != b"payload bytes"
    assert decrypt_ctr(ct, "0123456789abcdef", nonce) == b"payload bytes"
    with pytest.raises(ValueError):
        encrypt_ctr(b"x", "short")


def test_decoder_renders_all_names():
    names = {name: f"_n{pos}" for pos, name in enumerate(DECODER_NAMES)}
    names["X"] = "_x"
    lua = render_decoder(names)
    assert lua.startswith("local _n0={99,124,119,123,")
    assert "local function _n4(_n23,_n24,_n25)" in lua
    assert "{S}" not in lua and "{X}" not in lua


_DECLARED = (
    re.compile(r"\blocal\s+(?:function\s+)?([A-Za-z_]\w*(?:\s*,\s*[A-Za-z_]\w*)*)"),
    re.compile(r"\bfunction\s*[A-Za-z_]*\w*\(([^)]*)\)"),
    re.compile(r"\bfor\s+([A-Za-z_]\w*(?:\s*,\s*[A-Za-z_]\w*)*)\s*(?:=|in\b)"),
)


def _declared_names(lua):
    names = set()
    for pattern in _DECLARED:
        for group in pattern.findall(lua):
            names.update(v.strip() for v in group.split(",") if v.strip())
    return names


@pytest.mark.parametrize(
    "stages",
    [[XorStage()], [DeviceSaltStage()], [ShiftStage()], [XorStage(), ShiftStage(), SessionCipherStage()]],
    ids=["xor", "device_salt", "shift", "labyrinth"],
)
def test_artifacts_share_no_declared_names(stages):
    pipeline = TransformPipeline(stages, session_keys=_keys())
    a = _declared_names(pipeline.protect(SAMPLE, device_id="dev-1"))
    b = _declared_names(pipeline.protect(SAMPLE, device_id="dev-1"))
    assert a and b
    assert all(re.fullmatch(r"_[A-Za-z]{10}", name) for name in a | b), sorted(a | b)
    assert not a & b


# A payload over one chunk, with multi-byte characters, that leaves its result in a global.
LUA_PAYLOAD = "-- " + "padding " * 120 + "\n" + 'OUT = "héllo ✓ " .. tostring(1 + 2)\n'


@pytest.mark.parametrize("tier", ["standard", "device", "labyrinth"])
def test_artifact_runs_under_lua(tier):
    out = TransformPipeline.for_tier(tier, session_keys=_keys()).protect(LUA_PAYLOAD, device_id="dev-ü-1")
    lua = LuaRuntime()
    lua.execute(out)
    assert lua.globals().OUT == "héllo ✓ 3"


def test_xor_helper_runs_without_bit32():
    out = TransformPipeline([XorStage()]).protect(LUA_PAYLOAD)
    lua = LuaRuntime()
    lua.execute("bit32 = nil")
    lua.execute(out)
    assert lua.globals().OUT == "héllo ✓ 3"
