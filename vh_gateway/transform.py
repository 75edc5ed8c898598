"""Script protection: a chain of reversible, self-decoding Lua layers.

Each stage takes bytes and emits a Lua program that, when run, rebuilds those
bytes and hands them to ``loadstring or load``. Stages compose: every stage
after the first encodes the previous stage's program text.

    xor             b ^ K1                           (K1 in [50, 249])
    shift           (b + K2) % 256                   (K2 in [10, 109])
    device_salt     b ^ K ^ salt(device_id)          (salt embedded)
    session_cipher  AES-128-CTR under the rotating session key

Byte tables are emitted in fixed-size chunks to stay under the literal limits
of mobile executors. Every call draws fresh keys, fresh identifiers and
fresh filler, so identical input never produces identical output.

This is obfuscation, not protection: every key needed to undo a layer is in
the artifact (or, for the session cipher, one HTTP fetch away). `reveal`
exists precisely because undoing it is mechanical.
"""

from __future__ import annotations

import abc
import random
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from . import luaaes
from .noise import FillerGenerator, IdentifierGenerator
from .session_key import RotatingSessionKey

CORE_BANNER = "-- VanderHub Core"
DEFAULT_CHUNK_SIZE = 500
CIPHER_HEX_CHUNK = 4000

XOR_FUNCTION = (
    "local function {X}({A},{B}) if bit32 then return bit32.bxor({A},{B}) end "
    "local {R},{M}=0,1 while {A}>0 or {B}>0 do if {A}%2~={B}%2 then {R}={R}+{M} end "
    "{A},{B},{M}=math.floor({A}/2),math.floor({B}/2),{M}*2 end return {R} end"
)


@dataclass
class TransformContext:
    rng: random.Random
    names: IdentifierGenerator
    filler: FillerGenerator
    device_id: str = ""
    session_key: Optional[str] = None
    handshake_url: Optional[str] = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    innermost: bool = True


def device_salt(device_id: str) -> int:
    return sum((device_id or "").encode("utf-8")) % 256


def xor_function(name: str, names: IdentifierGenerator) -> str:
    """Render the XOR helper as `name`, with fresh names for its locals."""
    return XOR_FUNCTION.format(X=name, A=names(), B=names(), R=names(), M=names())


def lua_string(s: str) -> str:
    """Quote `s` as a Lua double-quoted string literal."""
    out = s.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\r", "\\r")
    return f'"{out}"'


def chunk_table(values: Sequence[int], table: str, idx: str, item: str, chunk_size: int) -> List[str]:
    lines = [f"local {table}={{}}"]
    for i in range(0, len(values), chunk_size):
        chunk = ",".join(str(v) for v in values[i:i + chunk_size])
        lines.append(f"for {idx},{item} in ipairs({{{chunk}}}) do table.insert({table},{item}) end")
    return lines


class Stage(abc.ABC):
    name: str = ""
    banner: str = ""
    requires_session_key = False

    @abc.abstractmethod
    def encode(self, payload: bytes, ctx: TransformContext) -> str:
        raise NotImplementedError

    def _finish(self, lines: List[str], ctx: TransformContext) -> str:
        head = CORE_BANNER if ctx.innermost else self.banner
        body = ctx.filler.interleave([head] + lines, ctx.names)
        return "\n".join(body) + "\n"


class XorStage(Stage):
    name = "xor"
    banner = "-- VanderHub Shield | XOR Layer"

    def encode(self, payload: bytes, ctx: TransformContext) -> str:
        key = ctx.rng.randint(50, 249)
        n = ctx.names
        t, k, r, i, x, run, idx, item = (n() for _ in range(8))
        lines = [f"local {k}={key}"]
        lines += chunk_table([b ^ key for b in payload], t, idx, item, ctx.chunk_size)
        lines += [
            f"local {r}={{}}",
            xor_function(x, n),
            f"for {i}=1,#{t} do {r}[{i}]=string.char({x}({t}[{i}],{k})) end",
            f"local {run}=loadstring or load",
            f"{run}(table.concat({r}))()",
        ]
        return self._finish(lines, ctx)


class ShiftStage(Stage):
    name = "shift"
    banner = "-- VanderHub Shield v2.6 | Fast Execution Shell"

    def encode(self, payload: bytes, ctx: TransformContext) -> str:
        key = ctx.rng.randint(10, 109)
        n = ctx.names
        t, k, r, i, run, idx, item = (n() for _ in range(7))
        lines = [f"local {k}={key}"]
        lines += chunk_table([(b + key) % 256 for b in payload], t, idx, item, ctx.chunk_size)
        lines += [
            f"local {r}={{}}",
            f"for {i}=1,#{t} do {r}[{i}]=string.char(({t}[{i}]-{k})%256) end",
            f"local {run}=loadstring or load",
            f"{run}(table.concat({r}))()",
        ]
        return self._finish(lines, ctx)


class DeviceSaltStage(Stage):
    """XOR with a random key and the device salt at once.

    The salt is embedded next to the key, so this labels an artifact with the
    device it was served to; it does not bind decryption to that device.
    """

    name = "device_salt"
    banner = "-- VanderHub Shield | Device Layer"

    def encode(self, payload: bytes, ctx: TransformContext) -> str:
        key = ctx.rng.randint(50, 249)
        salt = device_salt(ctx.device_id)
        n = ctx.names
        t, k, s, r, i, x, run, idx, item = (n() for _ in range(9))
        lines = [f"local {k}={key}", f"local {s}={salt}"]
        lines += chunk_table([b ^ key ^ salt for b in payload], t, idx, item, ctx.chunk_size)
        lines += [
            f"local {r}={{}}",
            xor_function(x, n),
            f"for {i}=1,#{t} do {r}[{i}]=string.char({x}({x}({t}[{i}],{k}),{s})) end",
            f"local {run}=loadstring or load",
            f"{run}(table.concat({r}))()",
        ]
        return self._finish(lines, ctx)


class SessionCipherStage(Stage):
    """AES-128-CTR under the rotating session key, with a Lua decoder.

    delivery="embedded" writes the session key into the artifact;
    delivery="handshake" makes the artifact fetch it from the handshake
    endpoint at run time, so a captured artifact stops decoding once the
    key bucket rolls over.
    """

    name = "session_cipher"
    banner = "-- [[ VANDER-SHIELD ULTIMATE ]]"
    requires_session_key = True

    def __init__(self, delivery: str = "embedded"):
        if delivery not in ("embedded", "handshake"):
            raise ValueError(f"unknown session key delivery: {delivery}")
        self.delivery = delivery

    def encode(self, payload: bytes, ctx: TransformContext) -> str:
        if not ctx.session_key:
            raise ValueError("session_cipher stage requires a session key")
        nonce, ciphertext = luaaes.encrypt_ctr(payload, ctx.session_key)
        n = ctx.names
        key_var, iv, p, x, run = (n() for _ in range(5))
        dec = {name: n() for name in luaaes.DECODER_NAMES}
        dec["X"] = x

        if self.delivery == "embedded":
            key_line = f"local {key_var}={lua_string(ctx.session_key)}"
        else:
            if not ctx.handshake_url:
                raise ValueError("handshake delivery requires a handshake URL")
            key_line = f"local {key_var}=game:HttpGet({lua_string(ctx.handshake_url)})"

        hexed = ciphertext.hex()
        lines = [key_line, f"local {iv}={lua_string(nonce.hex())}", f"local {p}={{}}"]
        for i in range(0, len(hexed), CIPHER_HEX_CHUNK):
            lines.append(f'{p}[#{p}+1]="{hexed[i:i + CIPHER_HEX_CHUNK]}"')
        lines += [
            xor_function(x, n),
            # Multi-line block: filler must not land inside it.
            luaaes.render_decoder(dec),
            f"local {run}=loadstring or load",
            f"{run}({dec['ctr']}(table.concat({p}),{key_var},{iv}))()",
        ]
        return self._finish(lines, ctx)


STAGES: Dict[str, Callable[..., Stage]] = {
    XorStage.name: XorStage,
    ShiftStage.name: ShiftStage,
    DeviceSaltStage.name: DeviceSaltStage,
    SessionCipherStage.name: SessionCipherStage,
}

TIERS: Dict[str, Tuple[str, ...]] = {
    "standard": ("xor", "shift"),
    "device": ("device_salt", "shift"),
    "labyrinth": ("xor", "shift", "session_cipher"),
}


class TransformPipeline:
    """Apply stages in order; the first stage sees the plaintext."""

    def __init__(
        self,
        stages: Sequence[Stage],
        tier: str = "custom",
        session_keys: Optional[RotatingSessionKey] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        filler_count: int = 6,
        rng_factory: Callable[[], random.Random] = random.SystemRandom,
        identifier_factory: Optional[Callable[[random.Random], IdentifierGenerator]] = None,
        filler_factory: Optional[Callable[[random.Random], FillerGenerator]] = None,
    ):
        if not stages:
            raise ValueError("pipeline needs at least one stage")
        if any(s.requires_session_key for s in stages) and session_keys is None:
            raise ValueError("session_cipher stage configured without a session key source")
        self.stages = list(stages)
        self.tier = tier
        self.session_keys = session_keys
        self.chunk_size = int(chunk_size)
        self._rng_factory = rng_factory
        self._identifier_factory = identifier_factory or (lambda rng: IdentifierGenerator(rng))
        self._filler_factory = filler_factory or (lambda rng: FillerGenerator(rng, count=filler_count))

    @classmethod
    def for_tier(cls, tier: str, session_key_delivery: str = "embedded", **kwargs) -> "TransformPipeline":
        if tier not in TIERS:
            raise ValueError(f"unknown protection tier: {tier}")
        stages: List[Stage] = []
        for name in TIERS[tier]:
            if name == SessionCipherStage.name:
                stages.append(SessionCipherStage(delivery=session_key_delivery))
            else:
                stages.append(STAGES[name]())
        return cls(stages, tier=tier, **kwargs)

    @property
    def needs_handshake_url(self) -> bool:
        return any(getattr(s, "delivery", None) == "handshake" for s in self.stages)

    def protect(self, source: str, device_id: str = "", handshake_url: Optional[str] = None) -> str:
        # An empty payload would produce a degenerate, tableless program.
        if not source:
            return source

        rng = self._rng_factory()
        ctx = TransformContext(
            rng=rng,
            names=self._identifier_factory(rng),
            filler=self._filler_factory(rng),
            device_id=device_id,
            session_key=self.session_keys.current_key() if self.session_keys else None,
            handshake_url=handshake_url,
            chunk_size=self.chunk_size,
        )
        payload = source.encode("utf-8")
        program = source
        for pos, stage in enumerate(self.stages):
            ctx.innermost = pos == 0
            program = stage.encode(payload, ctx)
            payload = program.encode("utf-8")
        return program


def decoy_program(rng: Optional[random.Random] = None) -> str:
    """Looks like a loader, does nothing, never returns."""
    names = IdentifierGenerator(rng or random.SystemRandom())
    w, f = names(), names()
    return "\n".join([
        CORE_BANNER,
        f"local {w}=(task and task.wait) or wait or function() end",
        f"local function {f}() while true do {w}(3600) end end",
        f"{f}()",
    ]) + "\n"


# ---------------------------
# Reversal
# ---------------------------

_RE_SESSION = re.compile(r"(\w+)\((\w+)\(table\.concat\((\w+)\),(\w+),(\w+)\)\)\(\)")
_RE_SALT = re.compile(r"string\.char\((\w+)\((\w+)\((\w+)\[(\w+)\],(\w+)\),(\w+)\)\)")
_RE_XOR = re.compile(r"string\.char\((\w+)\((\w+)\[(\w+)\],(\w+)\)\)")
_RE_SHIFT = re.compile(r"string\.char\(\((\w+)\[(\w+)\]-(\w+)\)%256\)")


def _int_var(text: str, name: str) -> int:
    m = re.search(rf"^local {re.escape(name)}=(\d+)$", text, flags=re.MULTILINE)
    if m is None:
        raise ValueError(f"artifact is missing the definition of {name}")
    return int(m.group(1))


def _str_var(text: str, name: str) -> Optional[str]:
    m = re.search(rf'^local {re.escape(name)}="([^"]*)"$', text, flags=re.MULTILINE)
    return m.group(1) if m else None


def _table_values(text: str, table: str) -> List[int]:
    pattern = re.compile(rf"ipairs\(\{{([0-9,]*)\}}\) do table\.insert\({re.escape(table)},")
    values: List[int] = []
    for chunk in pattern.findall(text):
        values.extend(int(v) for v in chunk.split(",") if v)
    return values


def _peel(text: str, session_key: Optional[str]) -> bytes:
    m = _RE_SESSION.search(text)
    if m:
        _, _, p, key_var, iv_var = m.groups()
        key = _str_var(text, key_var) or session_key
        if not key:
            raise ValueError("session key is not embedded; pass session_key")
        iv = _str_var(text, iv_var)
        if iv is None:
            raise ValueError("artifact is missing the cipher nonce")
        hexed = "".join(re.findall(rf'^{re.escape(p)}\[#{re.escape(p)}\+1\]="([0-9a-f]*)"$', text, flags=re.MULTILINE))
        return luaaes.decrypt_ctr(bytes.fromhex(hexed), key, bytes.fromhex(iv))

    m = _RE_SALT.search(text)
    if m:
        _, _, table, _, key_var, salt_var = m.groups()
        mask = _int_var(text, key_var) ^ _int_var(text, salt_var)
        return bytes(v ^ mask for v in _table_values(text, table))

    m = _RE_XOR.search(text)
    if m:
        _, table, _, key_var = m.groups()
        key = _int_var(text, key_var)
        return bytes(v ^ key for v in _table_values(text, table))

    m = _RE_SHIFT.search(text)
    if m:
        table, _, key_var = m.groups()
        key = _int_var(text, key_var)
        return bytes((v - key) % 256 for v in _table_values(text, table))

    raise ValueError("not a VanderHub artifact")


def reveal(artifact: str, session_key: Optional[str] = None, max_layers: int = 8) -> str:
    """Undo every layer of `artifact` using the keys it carries.

    `session_key` is only needed for session-cipher layers built with
    handshake delivery.
    """
    if not artifact:
        return artifact
    text = artifact
    for _ in range(max_layers):
        innermost = text.startswith(CORE_BANNER + "\n")
        text = _peel(text, session_key).decode("utf-8")
        if innermost:
            return text
    raise ValueError(f"more than {max_layers} layers")
