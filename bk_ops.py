from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
import binascii
import regex as regex_lib  # supports timeouts
from provide.foundation import logger

MAX_INPUT_BYTES = 2_000_000
REGEX_TIMEOUT = 0.5
PREVIEW_CHARS = 4000

B64_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
B64_PAD = "="

# int(c, 16) would also accept non-ASCII digits, so use an explicit table
_HEX_VALUES: Dict[str, int] = {c: i for i, c in enumerate("0123456789abcdef")}
_HEX_VALUES.update({c: i for i, c in enumerate("ABCDEF", start=10)})

# ------------------------------
# Errors
# ------------------------------
class CodecError(ValueError):
    """Base class for malformed codec input."""

class InvalidLength(CodecError):
    def __init__(self, length: int):
        self.length = length
        super().__init__(f"hex string has odd length {length}")

class InvalidDigit(CodecError):
    def __init__(self, char: str, index: int):
        self.char = char
        self.index = index
        super().__init__(f"invalid hex digit {char!r} at index {index}")

class LengthMismatch(CodecError):
    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(f"operands differ in length ({left} != {right}); they must be the same")

# ------------------------------
# Utilities
# ------------------------------
def clamp_bytes(b: bytes, max_len: int = MAX_INPUT_BYTES) -> bytes:
    if len(b) > max_len:
        return b[:max_len]
    return b

def try_decode_utf8(b: bytes) -> str:
    try:
        return b.decode("utf-8")
    except UnicodeDecodeError:
        return b.decode("latin-1", errors="replace")

def strip_ws(s: str) -> str:
    return "".join(s.split())

# ------------------------------
# Codec primitives
# ------------------------------
def hex_to_bytes(s: str) -> bytes:
    """Decode a hex string, two characters per byte.

    Raises InvalidLength for odd input and InvalidDigit for anything
    outside 0-9a-fA-F. The empty string decodes to b"".
    """
    if len(s) % 2:
        raise InvalidLength(len(s))
    out = bytearray()
    for i in range(0, len(s), 2):
        hi = _HEX_VALUES.get(s[i])
        if hi is None:
            raise InvalidDigit(s[i], i)
        lo = _HEX_VALUES.get(s[i + 1])
        if lo is None:
            raise InvalidDigit(s[i + 1], i + 1)
        out.append(hi << 4 | lo)
    return bytes(out)

def bytes_to_hex(b: bytes) -> str:
    return binascii.hexlify(bytes(b)).decode("ascii")

def bytes_to_base64(data: Union[bytes, bytearray, Iterable[int]]) -> str:
    """Encode bytes as standard, padded Base64.

    Input is taken three bytes at a time and packed big-endian into a
    24-bit triplet, which is split into four 6-bit alphabet indices:

        bits [23:18] [17:12] [11:6] [5:0]

    A short final group is zero-filled for packing only. One source byte
    yields two characters plus "==", two source bytes yield three plus "=".
    """
    data = bytes(data)
    out: List[str] = []
    for start in range(0, len(data), 3):
        chunk = data[start:start + 3]
        triplet = 0
        for i, byte in enumerate(chunk):
            triplet |= byte << (8 * (2 - i))
        out.append(B64_ALPHABET[(triplet & 0xFC0000) >> 18])
        out.append(B64_ALPHABET[(triplet & 0x03F000) >> 12])
        out.append(B64_ALPHABET[(triplet & 0x000FC0) >> 6] if len(chunk) > 1 else B64_PAD)
        out.append(B64_ALPHABET[triplet & 0x00003F] if len(chunk) > 2 else B64_PAD)
    return "".join(out)

def hex_to_base64(s: str) -> str:
    return bytes_to_base64(hex_to_bytes(s))

def xor_bytes(a: bytes, b: bytes) -> bytes:
    if len(a) != len(b):
        raise LengthMismatch(len(a), len(b))
    return bytes(x ^ y for x, y in zip(a, b))

def xor_hex(hex1: str, hex2: str) -> str:
    """XOR two equal-length hex strings, returning lowercase hex."""
    # equal hex length implies equal byte length, so check before decoding
    if len(hex1) != len(hex2):
        raise LengthMismatch(len(hex1), len(hex2))
    return bytes_to_hex(xor_bytes(hex_to_bytes(hex1), hex_to_bytes(hex2)))

# ------------------------------
# Format detection
# ------------------------------
def _fullmatch(pattern: str, s: str) -> bool:
    try:
        return regex_lib.fullmatch(pattern, s, timeout=REGEX_TIMEOUT) is not None
    except TimeoutError:
        logger.debug(f"Pattern check timed out on {len(s)} chars")
        return False

def looks_like_hex(s: str) -> bool:
    s = strip_ws(s)
    return len(s) >= 2 and len(s) % 2 == 0 and _fullmatch(r"[0-9A-Fa-f]+", s)

def looks_like_base64(s: str) -> bool:
    s = strip_ws(s)
    if len(s) < 8 or len(s) % 4:
        return False
    return _fullmatch(r"[A-Za-z0-9+/]+={0,2}", s)

# ------------------------------
# Operation spec / registry
# ------------------------------
@dataclass
class Operation:
    key: str
    name: str
    category: str
    fn: Callable[[bytes, Dict[str, Any]], Tuple[bytes, Dict[str, Any]]]
    params_schema: Dict[str, Any] = field(default_factory=dict)
    output_hint: str = "auto"  # "auto" | "text" | "hex"

OPS: Dict[str, Operation] = {}

def register(op: Operation):
    OPS[op.key] = op

# ------------------------------
# Implementations
# ------------------------------
def hex_to_bin_op(data: bytes, p: Dict[str, Any]):
    try:
        return hex_to_bytes(strip_ws(try_decode_utf8(data))), {}
    except CodecError as e:
        raise ValueError(f"Hex parse failed: {e}") from e

def bin_to_hex_op(data: bytes, p: Dict[str, Any]):
    return bytes_to_hex(data).encode("ascii"), {"format": "hex"}

def base64_encode_op(data: bytes, p: Dict[str, Any]):
    return bytes_to_base64(data).encode("ascii"), {}

def hex_to_base64_op(data: bytes, p: Dict[str, Any]):
    try:
        return hex_to_base64(strip_ws(try_decode_utf8(data))).encode("ascii"), {}
    except CodecError as e:
        raise ValueError(f"Hex to Base64 failed: {e}") from e

def fixed_xor_op(data: bytes, p: Dict[str, Any]):
    other = strip_ws(str(p.get("other", "")))
    if not other:
        raise ValueError("Fixed XOR needs a hex operand")
    try:
        out = xor_hex(strip_ws(try_decode_utf8(data)), other)
    except CodecError as e:
        raise ValueError(f"Fixed XOR failed: {e}") from e
    return out.encode("ascii"), {"format": "hex"}

register(Operation("hex2bin", "Hex → Bytes", "Encoding", hex_to_bin_op))
register(Operation("bin2hex", "Bytes → Hex", "Encoding", bin_to_hex_op, output_hint="hex"))
register(Operation("b64e", "Base64 Encode", "Encoding", base64_encode_op))
register(Operation("hex2b64", "Hex → Base64", "Encoding", hex_to_base64_op))
register(Operation("fxor", "Fixed XOR (hex)", "Crypto", fixed_xor_op,
                   params_schema={"other": ""}, output_hint="hex"))

# ------------------------------
# Recipes
# ------------------------------
@dataclass
class Step:
    op_key: str
    enabled: bool = True
    params: Optional[Dict[str, Any]] = None
    def to_json(self):
        return {"op_key": self.op_key, "enabled": self.enabled, "params": self.params or {}}

    @classmethod
    def from_json(cls, obj: Any) -> "Step":
        if not isinstance(obj, dict):
            raise ValueError(f"step must be an object, got {type(obj).__name__}")
        op_key = obj.get("op_key")
        if not isinstance(op_key, str):
            raise ValueError("step needs a string 'op_key'")
        params = obj.get("params") or {}
        if not isinstance(params, dict):
            raise ValueError(f"params of step {op_key!r} must be an object")
        return cls(op_key=op_key, enabled=bool(obj.get("enabled", True)), params=params)

@dataclass
class Recipe:
    steps: List[Step] = field(default_factory=list)
    def to_json(self):
        return {"steps": [s.to_json() for s in self.steps]}

    @classmethod
    def from_json(cls, obj: Any) -> "Recipe":
        """Build a recipe from parsed JSON, raising ValueError on a bad shape."""
        if not isinstance(obj, dict):
            raise ValueError(f"recipe must be an object, got {type(obj).__name__}")
        steps = obj.get("steps", [])
        if not isinstance(steps, list):
            raise ValueError("recipe 'steps' must be a list")
        return cls(steps=[Step.from_json(it) for it in steps])

@dataclass
class RecipeResult:
    data: bytes
    errors: List[str] = field(default_factory=list)
    trace: List[Tuple[int, str, bytes]] = field(default_factory=list)  # (step index, op name, output)

    @property
    def ok(self) -> bool:
        return not self.errors

def run_recipe(data: bytes, recipe: Recipe) -> RecipeResult:
    """Run enabled steps in order, stopping at the first failure.

    On failure `data` holds the output of the last step that succeeded.
    """
    result = RecipeResult(data=clamp_bytes(data))
    for idx, step in enumerate(recipe.steps):
        if not step.enabled:
            continue
        op = OPS.get(step.op_key)
        if op is None:
            result.errors.append(f"Step {idx+1}: unknown operation {step.op_key!r}")
            break
        if step.params is not None and not isinstance(step.params, dict):
            result.errors.append(f"Step {idx+1} ({op.name}): params must be a mapping")
            break
        try:
            out, _meta = op.fn(result.data, step.params or {})
        except ValueError as e:
            logger.info(f"Recipe stopped at step {idx+1} ({op.key}): {e}")
            result.errors.append(f"Step {idx+1} ({op.name}): {e}")
            break
        result.data = clamp_bytes(out)
        result.trace.append((idx, op.name, result.data))
        logger.debug(f"Step {idx+1} ({op.key}) produced {len(result.data)} bytes")
    return result

# ------------------------------
# Magic detection
# ------------------------------
def magic_detect(sample: str) -> List[Tuple[str, float]]:
    hints: List[Tuple[str, float]] = []
    if looks_like_hex(sample): hints.append(("Hex", 0.8))
    if looks_like_base64(sample): hints.append(("Base64", 0.7))
    return sorted(hints, key=lambda x: x[1], reverse=True)
