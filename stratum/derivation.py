"""Derivations and their ATerm serialization.

A derivation is serialized as

    Derive([outputs],[inputDrvs],[inputSrcs],"system","builder",[args],[env])

with outputs as ``(name, path, hashAlgo, hash)`` tuples (hashAlgo and
hash are empty unless the output is fixed), inputDrvs as
``(drvPath, [outputNames])`` pairs and env as ``(key, value)`` pairs.
Every list except args is written sorted, which makes the text (and so
the .drv store path) a pure function of the derivation's content.

See: nix/src/libstore/derivations.cc
"""

from dataclasses import dataclass, field

from stratum.digest import sha256


@dataclass
class DerivationOutput:
    path: str
    hash_algo: str = ""
    hash_value: str = ""


@dataclass
class Derivation:
    outputs: dict[str, DerivationOutput] = field(default_factory=dict)
    input_drvs: dict[str, list[str]] = field(default_factory=dict)
    input_srcs: list[str] = field(default_factory=list)
    platform: str = ""
    builder: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    @property
    def is_fixed_output(self) -> bool:
        return (
            list(self.outputs) == ["out"]
            and self.outputs["out"].hash_algo != ""
        )


_ESCAPES = {"\\": "\\\\", '"': '\\"', "\n": "\\n", "\r": "\\r", "\t": "\\t"}
_UNESCAPES = {"n": "\n", "r": "\r", "t": "\t"}


def _quote(s: str) -> str:
    return '"' + "".join(_ESCAPES.get(ch, ch) for ch in s) + '"'


def _list(items) -> str:
    return "[" + ",".join(items) + "]"


def _tuple(*items: str) -> str:
    return "(" + ",".join(items) + ")"


def serialize(drv: Derivation) -> str:
    """Render ``drv`` as ATerm text."""
    outputs = _list(
        _tuple(_quote(name), _quote(o.path), _quote(o.hash_algo), _quote(o.hash_value))
        for name, o in sorted(drv.outputs.items())
    )
    input_drvs = _list(
        _tuple(_quote(path), _list(_quote(o) for o in sorted(outs)))
        for path, outs in sorted(drv.input_drvs.items())
    )
    env = _list(_tuple(_quote(k), _quote(v)) for k, v in sorted(drv.env.items()))
    return "Derive(" + ",".join([
        outputs,
        input_drvs,
        _list(_quote(s) for s in sorted(drv.input_srcs)),
        _quote(drv.platform),
        _quote(drv.builder),
        _list(_quote(a) for a in drv.args),
        env,
    ]) + ")"


class _Reader:
    """Cursor over ATerm text."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def _fail(self, what: str):
        raise ValueError(f"expected {what} at offset {self.pos} of derivation")

    def literal(self, s: str) -> None:
        if not self.text.startswith(s, self.pos):
            self._fail(repr(s))
        self.pos += len(s)

    def at(self, ch: str) -> bool:
        return self.pos < len(self.text) and self.text[self.pos] == ch

    def string(self) -> str:
        self.literal('"')
        buf = []
        text = self.text
        while True:
            if self.pos >= len(text):
                self._fail("closing quote")
            ch = text[self.pos]
            if ch == '"':
                break
            if ch == "\\":
                self.pos += 1
                if self.pos >= len(text):
                    self._fail("escaped character")
                ch = _UNESCAPES.get(text[self.pos], text[self.pos])
            buf.append(ch)
            self.pos += 1
        self.pos += 1
        return "".join(buf)

    def items(self, read_item) -> list:
        self.literal("[")
        out = []
        while not self.at("]"):
            if out:
                self.literal(",")
            out.append(read_item())
        self.literal("]")
        return out

    def pair(self, read_second) -> tuple:
        self.literal("(")
        first = self.string()
        self.literal(",")
        second = read_second()
        self.literal(")")
        return first, second

    def output(self) -> tuple[str, DerivationOutput]:
        self.literal("(")
        name = self.string()
        fields = []
        for _ in range(3):
            self.literal(",")
            fields.append(self.string())
        self.literal(")")
        return name, DerivationOutput(*fields)


def parse(text: str) -> Derivation:
    """Parse ATerm text produced by :func:`serialize` (or by Nix)."""
    r = _Reader(text)
    r.literal("Derive(")
    outputs = dict(r.items(r.output))
    r.literal(",")
    input_drvs = dict(r.items(lambda: r.pair(lambda: r.items(r.string))))
    r.literal(",")
    input_srcs = r.items(r.string)
    r.literal(",")
    platform = r.string()
    r.literal(",")
    builder = r.string()
    r.literal(",")
    args = r.items(r.string)
    r.literal(",")
    env = dict(r.items(lambda: r.pair(r.string)))
    r.literal(")")
    return Derivation(outputs, input_drvs, input_srcs, platform, builder, args, env)


def hash_derivation_modulo(drv: Derivation, drv_hashes: dict[str, bytes] | None = None,
                           mask_outputs: bool = True) -> bytes:
    """The derivation hash that output paths are computed from.

    Fixed-output derivations hash only their declared content, so the
    way something is fetched never moves its path. For everything else
    each input .drv path is replaced by that input's own modulo hash
    (looked up in ``drv_hashes``) and, when ``mask_outputs`` is set, the
    derivation's own output paths are blanked before hashing. Inputs are
    hashed with ``mask_outputs=False`` by their dependents.

    See: nix/src/libstore/derivations.cc (hashDerivationModulo)
    """
    if drv.is_fixed_output:
        o = drv.outputs["out"]
        return sha256(f"fixed:out:{o.hash_algo}:{o.hash_value}:{o.path}".encode())

    drv_hashes = drv_hashes or {}
    rewritten: dict[str, list[str]] = {}
    for path, outs in drv.input_drvs.items():
        try:
            rewritten[drv_hashes[path].hex()] = sorted(outs)
        except KeyError:
            raise ValueError(f"missing hash for input derivation: {path}") from None

    env = dict(drv.env)
    if mask_outputs:
        outputs = {n: DerivationOutput("", o.hash_algo, o.hash_value) for n, o in drv.outputs.items()}
        for n in outputs:
            if n in env:
                env[n] = ""
    else:
        outputs = dict(drv.outputs)

    masked = Derivation(
        outputs=outputs,
        input_drvs=rewritten,
        input_srcs=list(drv.input_srcs),
        platform=drv.platform,
        builder=drv.builder,
        args=list(drv.args),
        env=env,
    )
    return sha256(serialize(masked).encode())
