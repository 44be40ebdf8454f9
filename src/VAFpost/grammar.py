"""
Event expressions over sample allele frequencies.

Grammar (lowest to highest precedence):

    disjunction := conjunction ("|" conjunction)*
    conjunction := unary ("&" unary)*
    unary       := "!" unary | primary
    primary     := "(" disjunction ")"
                 | "$" NAME                      named sub-expression
                 | SAMPLE ":" spectrum           e.g. tumor:]0.0,0.1[  or  normal:0.5
                 | BASE ">" BASE                 substitution class, e.g. C>T
                 | "SNV" | "MNV" | "INS" | "DEL" variant type

Expressions compile once per scenario into an immutable tree. Named
sub-expressions are resolved structurally: every event referring to
``$name`` shares the same subtree object, so it is evaluated once per locus.
Evaluation produces boolean masks over the rows of the joint posterior grid;
the probability of a conjunction is the mass of the intersection of its
operands' regions.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Mapping, Set, Tuple

import numpy as np

from .errors import ScenarioConfigError
from .universe import VAFSpectrum, parse_spectrum
from .utils import Locus


_IDENT_RE = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.\-]*")
_BASE_RE = re.compile(r"[ACGT]")
VARIANT_TYPES = ("SNV", "MNV", "INS", "DEL")


# =============================================================================
# Expression tree
# =============================================================================


@dataclass
class EvaluationContext:
    """Per-locus inputs for mask evaluation; masks are memoized per node."""

    locus: Locus
    vafs: Mapping[str, np.ndarray]
    size: int
    memo: Dict["Expression", np.ndarray] = field(default_factory=dict)


class Expression:
    def mask(self, context: EvaluationContext) -> np.ndarray:
        if self not in context.memo:
            context.memo[self] = self._evaluate(context)
        return context.memo[self]

    def _evaluate(self, context: EvaluationContext) -> np.ndarray:
        raise NotImplementedError

    def children(self) -> Tuple["Expression", ...]:
        return ()

    def samples(self) -> Set[str]:
        names: Set[str] = set()
        for child in self.children():
            names |= child.samples()
        return names

    def breakpoints(self) -> Dict[str, Set[float]]:
        """Range bounds and point values per sample referenced by this expression."""
        points: Dict[str, Set[float]] = {}
        for child in self.children():
            for sample, values in child.breakpoints().items():
                points.setdefault(sample, set()).update(values)
        return points


@dataclass(frozen=True, eq=False)
class VAFTerm(Expression):
    sample: str
    spectrum: VAFSpectrum

    def _evaluate(self, context):
        return self.spectrum.contains(context.vafs[self.sample])

    def samples(self):
        return {self.sample}

    def breakpoints(self):
        return {self.sample: set(self.spectrum.breakpoints())}

    def __str__(self):
        return f"{self.sample}:{self.spectrum}"


@dataclass(frozen=True, eq=False)
class Substitution(Expression):
    ref: str
    alt: str

    def _evaluate(self, context):
        return np.full(context.size, context.locus.substitution == (self.ref, self.alt))

    def __str__(self):
        return f"{self.ref}>{self.alt}"


@dataclass(frozen=True, eq=False)
class VariantTypeTerm(Expression):
    kind: str

    def _evaluate(self, context):
        return np.full(context.size, context.locus.variant_type == self.kind)

    def __str__(self):
        return self.kind


@dataclass(frozen=True, eq=False)
class Negation(Expression):
    operand: Expression

    def _evaluate(self, context):
        return ~self.operand.mask(context)

    def children(self):
        return (self.operand,)

    def __str__(self):
        return f"!{self.operand}"


@dataclass(frozen=True, eq=False)
class Conjunction(Expression):
    operands: Tuple[Expression, ...]

    def _evaluate(self, context):
        result = np.ones(context.size, dtype=bool)
        for operand in self.operands:
            result = result & operand.mask(context)
            if not result.any():
                break
        return result

    def children(self):
        return self.operands

    def __str__(self):
        return "(" + " & ".join(map(str, self.operands)) + ")"


@dataclass(frozen=True, eq=False)
class Disjunction(Expression):
    operands: Tuple[Expression, ...]

    def _evaluate(self, context):
        result = np.zeros(context.size, dtype=bool)
        for operand in self.operands:
            result = result | operand.mask(context)
            if result.all():
                break
        return result

    def children(self):
        return self.operands

    def __str__(self):
        return "(" + " | ".join(map(str, self.operands)) + ")"


@dataclass(frozen=True, eq=False)
class Reference(Expression):
    """Unresolved ``$name``; replaced by the named subtree during compilation."""

    name: str

    def _evaluate(self, context):
        raise ScenarioConfigError(f"unresolved expression reference ${self.name}")

    def __str__(self):
        return f"${self.name}"


# =============================================================================
# Parser
# =============================================================================


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def error(self, message: str) -> ScenarioConfigError:
        return ScenarioConfigError(f"{message} at position {self.pos} in expression {self.text!r}")

    def skip(self):
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def peek(self) -> str:
        self.skip()
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def expect(self, char: str):
        if self.peek() != char:
            raise self.error(f"expected {char!r}")
        self.pos += 1

    def parse(self) -> Expression:
        expression = self.disjunction()
        if self.peek():
            raise self.error("unexpected input")
        return expression

    def disjunction(self) -> Expression:
        operands = [self.conjunction()]
        while self.peek() == "|":
            self.pos += 1
            operands.append(self.conjunction())
        return operands[0] if len(operands) == 1 else Disjunction(tuple(operands))

    def conjunction(self) -> Expression:
        operands = [self.unary()]
        while self.peek() == "&":
            self.pos += 1
            operands.append(self.unary())
        return operands[0] if len(operands) == 1 else Conjunction(tuple(operands))

    def unary(self) -> Expression:
        if self.peek() == "!":
            self.pos += 1
            return Negation(self.unary())
        return self.primary()

    def identifier(self) -> str:
        self.skip()
        m = _IDENT_RE.match(self.text, self.pos)
        if m is None:
            raise self.error("expected identifier")
        self.pos = m.end()
        return m.group(0)

    def primary(self) -> Expression:
        char = self.peek()
        if char == "(":
            self.pos += 1
            expression = self.disjunction()
            self.expect(")")
            return expression
        if char == "$":
            self.pos += 1
            return Reference(self.identifier())
        if not char:
            raise self.error("unexpected end of expression")

        name = self.identifier()
        char = self.peek()
        if char == ":":
            self.pos += 1
            self.skip()
            spectrum, self.pos = parse_spectrum(self.text, self.pos)
            return VAFTerm(name, spectrum)
        if char == ">" and _BASE_RE.fullmatch(name):
            self.pos += 1
            self.skip()
            m = _BASE_RE.match(self.text, self.pos)
            if m is None:
                raise self.error("expected base after '>'")
            self.pos = m.end()
            return Substitution(name, m.group(0))
        if name in VARIANT_TYPES:
            return VariantTypeTerm(name)
        raise self.error(f"expected ':' after sample name {name!r}")


def parse_expression(text: str) -> Expression:
    """Parse an expression; ``$name`` references stay unresolved."""
    return _Parser(str(text)).parse()


# =============================================================================
# Compilation
# =============================================================================


def compile_events(
    events: Mapping[str, str],
    expressions: Mapping[str, str],
    samples: Iterable[str],
) -> Dict[str, Expression]:
    """
    Parse events and named expressions into resolved, shared trees.

    Raises
    ------
    ScenarioConfigError
        On syntax errors, undefined or cyclic ``$name`` references, and
        references to samples that are not declared.
    """
    known_samples = set(samples)
    parsed = {name: parse_expression(text) for name, text in expressions.items()}
    resolved: Dict[str, Expression] = {}
    resolving: Set[str] = set()

    def resolve_named(name: str) -> Expression:
        if name in resolved:
            return resolved[name]
        if name in resolving:
            raise ScenarioConfigError(f"expression ${name} refers to itself")
        if name not in parsed:
            raise ScenarioConfigError(f"undefined expression ${name}")
        resolving.add(name)
        resolved[name] = resolve(parsed[name])
        resolving.discard(name)
        return resolved[name]

    def resolve(node: Expression) -> Expression:
        if isinstance(node, Reference):
            return resolve_named(node.name)
        if isinstance(node, Negation):
            return replace(node, operand=resolve(node.operand))
        if isinstance(node, (Conjunction, Disjunction)):
            return replace(node, operands=tuple(resolve(op) for op in node.operands))
        return node

    for name in parsed:
        resolve_named(name)
    compiled = {name: resolve(parse_expression(text)) for name, text in events.items()}

    for name, tree in list(resolved.items()) + list(compiled.items()):
        unknown = tree.samples() - known_samples
        if unknown:
            raise ScenarioConfigError(
                f"expression {name!r} refers to unknown sample(s): {', '.join(sorted(unknown))}"
            )
    return compiled


def event_breakpoints(events: Mapping[str, Expression]) -> Dict[str, Set[float]]:
    """Union of per-sample breakpoints over all events."""
    points: Dict[str, Set[float]] = {}
    for tree in events.values():
        for sample, values in tree.breakpoints().items():
            points.setdefault(sample, set()).update(values)
    return points
