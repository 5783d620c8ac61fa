"""
Compiles the `pattern(...)` sub-language into a Python regular expression.

    pattern(digit*4 "-" digit*2 "-" digit*2)   ->   [0-9]{4}\\-[0-9]{2}\\-[0-9]{2}

The regex is stored unanchored and always applied with `re.fullmatch`, so a
pattern describes a whole string. Character classes are ASCII only.
"""
import re
import string
from functools import lru_cache
from typing import Iterable

from mindl.mindl_ast import (
    PatternElement, CharClass, CharClassType, PatternLiteral, Quantified,
    Quantifier, Exact, Range, AnyCount,
)


_CHAR_CLASS_REGEX = {
    CharClassType.DIGIT: "[0-9]",
    CharClassType.LETTER: "[a-zA-Z]",
    CharClassType.SPACE: r"[ \t\n\r\f\v]",
    CharClassType.PUNCT: "[" + re.escape(string.punctuation) + "]",
    CharClassType.ANY: ".",
}


def compile_pattern(elements: Iterable[PatternElement]) -> str:
    return "".join(_element_regex(element) for element in elements)


def _element_regex(element: PatternElement) -> str:
    match element:
        case CharClass(kind=kind):
            return _CHAR_CLASS_REGEX[kind]
        case PatternLiteral(value=value):
            return re.escape(value)
        case Quantified(element=inner, quantifier=quantifier):
            inner_regex = _element_regex(inner)
            # A quantified multi-character literal repeats as a unit.
            if isinstance(inner, PatternLiteral) and len(inner.value) != 1:
                inner_regex = f"(?:{inner_regex})"
            return inner_regex + _quantifier_regex(quantifier)
        case _:
            raise TypeError(f"Unknown pattern element: {element!r}")


def _quantifier_regex(quantifier: Quantifier) -> str:
    match quantifier:
        case Exact(n=n):
            return f"{{{n}}}"
        case AnyCount():
            return "*"
        case Range(min=lo, max=None):
            return f"{{{lo},}}"
        case Range(min=lo, max=hi):
            return f"{{{lo},{hi}}}"
        case _:
            raise TypeError(f"Unknown quantifier: {quantifier!r}")


@lru_cache(maxsize=256)
def compiled(regex: str) -> "re.Pattern[str]":
    return re.compile(regex)


def full_match(regex: str, text: str) -> bool:
    return compiled(regex).fullmatch(text) is not None
