"""AES-128-CTR for the session-cipher stage.

Encryption runs server-side through `cryptography`. The emitted artifact
carries a small Lua AES implementation (forward cipher only, which is all CTR
needs) so the downstream interpreter can decrypt with the session key.
"""

from __future__ import annotations

import os
from typing import List, Tuple

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

NONCE_SIZE = 16
KEY_SIZE = 16


def _rotl8(x: int, shift: int) -> int:
    return ((x << shift) | (x >> (8 - shift))) & 0xFF


def aes_sbox() -> List[int]:
    """Compute the AES S-box (multiplicative inverse in GF(2^8) + affine map)."""
    sbox = [0] * 256
    p = q = 1
    while True:
        # p *= 3
        p = (p ^ (p << 1) ^ (0x1B if p & 0x80 else 0)) & 0xFF
        # q /= 3
        q = (q ^ (q << 1)) & 0xFF
        q = (q ^ (q << 2)) & 0xFF
        q = (q ^ (q << 4)) & 0xFF
        if q & 0x80:
            q ^= 0x09
        x = q ^ _rotl8(q, 1) ^ _rotl8(q, 2) ^ _rotl8(q, 3) ^ _rotl8(q, 4)
        sbox[p] = x ^ 0x63
        if p == 1:
            break
    sbox[0] = 0x63
    return sbox


SBOX = aes_sbox()


def session_key_bytes(session_key: str) -> bytes:
    key = session_key.encode("ascii")
    if len(key) != KEY_SIZE:
        raise ValueError(f"session key must be {KEY_SIZE} characters, got {len(key)}")
    return key


def encrypt_ctr(plaintext: bytes, session_key: str, nonce: bytes | None = None) -> Tuple[bytes, bytes]:
    """Return (nonce, ciphertext). The nonce is the initial 128-bit counter block."""
    nonce = nonce or os.urandom(NONCE_SIZE)
    enc = Cipher(algorithms.AES(session_key_bytes(session_key)), modes.CTR(nonce)).encryptor()
    return nonce, enc.update(plaintext) + enc.finalize()


def decrypt_ctr(ciphertext: bytes, session_key: str, nonce: bytes) -> bytes:
    dec = Cipher(algorithms.AES(session_key_bytes(session_key)), modes.CTR(nonce)).decryptor()
    return dec.update(ciphertext) + dec.finalize()


# Every identifier in the template is a placeholder filled per artifact;
# DECODER_NAMES lists them (plus X, the shared XOR helper).
# Counter increment matches `cryptography`'s CTR mode: the whole 16-byte block
# is a big-endian integer.
DECODER_NAMES = (
    "S", "xt", "exp", "blk", "ctr",
    "a", "b", "c", "d", "k", "w", "i", "rc", "inb", "s", "r", "t", "q",
    "a0", "a1", "a2", "a3", "e", "hex", "kstr", "ivhex", "n", "out", "ks", "j", "p",
)

LUA_AES_CTR_DECODER = """\
local {S}={{{sbox}}}
local function {xt}({a}) {a}={a}*2 if {a}>=256 then {a}={X}({a}-256,27) end return {a} end
local function {exp}({k})
local {w}={{}}
for {i}=1,16 do {w}[{i}]={k}[{i}] end
local {rc}=1
for {i}=17,176,4 do
local {a},{b},{c},{d}={w}[{i}-4],{w}[{i}-3],{w}[{i}-2],{w}[{i}-1]
if ({i}-1)%16==0 then {a},{b},{c},{d}={X}({S}[{b}+1],{rc}),{S}[{c}+1],{S}[{d}+1],{S}[{a}+1] {rc}={xt}({rc}) end
{w}[{i}]={X}({w}[{i}-16],{a}) {w}[{i}+1]={X}({w}[{i}-15],{b}) {w}[{i}+2]={X}({w}[{i}-14],{c}) {w}[{i}+3]={X}({w}[{i}-13],{d})
end
return {w}
end
local function {blk}({w},{inb})
local {s}={{}}
for {i}=1,16 do {s}[{i}]={X}({inb}[{i}],{w}[{i}]) end
for {r}=1,10 do
for {i}=1,16 do {s}[{i}]={S}[{s}[{i}]+1] end
local {t}={{}}
for {c}=0,3 do for {q}=0,3 do {t}[{c}*4+{q}+1]={s}[(({c}+{q})%4)*4+{q}+1] end end
{s}={t}
if {r}<10 then
for {c}=0,12,4 do
local {a0},{a1},{a2},{a3}={s}[{c}+1],{s}[{c}+2],{s}[{c}+3],{s}[{c}+4]
local {e}={X}({X}({a0},{a1}),{X}({a2},{a3}))
{s}[{c}+1]={X}({a0},{X}({e},{xt}({X}({a0},{a1}))))
{s}[{c}+2]={X}({a1},{X}({e},{xt}({X}({a1},{a2}))))
{s}[{c}+3]={X}({a2},{X}({e},{xt}({X}({a2},{a3}))))
{s}[{c}+4]={X}({a3},{X}({e},{xt}({X}({a3},{a0}))))
end
end
for {i}=1,16 do {s}[{i}]={X}({s}[{i}],{w}[{r}*16+{i}]) end
end
return {s}
end
local function {ctr}({hex},{kstr},{ivhex})
local {k},{n}={{}},{{}}
for {i}=1,16 do {k}[{i}]=string.byte({kstr},{i}) {n}[{i}]=tonumber({ivhex}:sub({i}*2-1,{i}*2),16) end
local {w}={exp}({k})
local {out},{ks},{j}={{}},nil,17
for {i}=1,#{hex},2 do
if {j}>16 then
{ks}={blk}({w},{n}) {j}=1
for {p}=16,1,-1 do {n}[{p}]={n}[{p}]+1 if {n}[{p}]<256 then break end {n}[{p}]=0 end
end
{out}[#{out}+1]=string.char({X}(tonumber({hex}:sub({i},{i}+1),16),{ks}[{j}]))
{j}={j}+1
end
return table.concat({out})
end"""


def render_decoder(names: dict) -> str:
    """Render the Lua decoder; `names` maps every DECODER_NAMES entry and X to identifiers."""
    return LUA_AES_CTR_DECODER.format(sbox=",".join(str(v) for v in SBOX), **names)
