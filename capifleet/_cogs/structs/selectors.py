"""
Kubernetes label selectors: parsing, matching, and rendering.

The selectors come from two sources: as strings from the configuration object
(e.g. ``"env=prod,tier in (web, api),!legacy"``), and as ``LabelSelector``
mappings (``matchLabels`` & ``matchExpressions``) in the resources' specs.
Both are converted to the same :class:`Selector`, which is then rendered
to the canonical string for the ``labelSelector=`` query parameter.
"""
import dataclasses
import enum
import re
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Tuple


class SelectorParseError(ValueError):
    """ A malformed selector in the configuration or in a resource. """


class Operator(str, enum.Enum):
    EQUALS = '='
    NOT_EQUALS = '!='
    IN = 'in'
    NOT_IN = 'notin'
    EXISTS = 'exists'
    DOES_NOT_EXIST = '!'


@dataclasses.dataclass(frozen=True)
class Requirement:
    key: str
    operator: Operator
    values: Tuple[str, ...] = ()

    def match(self, labels: Mapping[str, str]) -> bool:
        if self.operator == Operator.EXISTS:
            return self.key in labels
        elif self.operator == Operator.DOES_NOT_EXIST:
            return self.key not in labels
        elif self.operator in (Operator.EQUALS, Operator.IN):
            return self.key in labels and labels[self.key] in self.values
        elif self.operator in (Operator.NOT_EQUALS, Operator.NOT_IN):
            return self.key not in labels or labels[self.key] not in self.values
        else:
            raise TypeError(f"Unsupported selector operator: {self.operator!r}")

    def __str__(self) -> str:
        if self.operator == Operator.EXISTS:
            return self.key
        elif self.operator == Operator.DOES_NOT_EXIST:
            return f'!{self.key}'
        elif self.operator in (Operator.EQUALS, Operator.NOT_EQUALS):
            return f'{self.key}{self.operator.value}{self.values[0]}'
        else:
            return f'{self.key} {self.operator.value} ({",".join(self.values)})'


@dataclasses.dataclass(frozen=True)
class Selector:
    """
    A conjunction of the label requirements. An empty selector matches everything.
    """
    requirements: Tuple[Requirement, ...] = ()

    def __iter__(self) -> Iterator[Requirement]:
        return iter(self.requirements)

    def __bool__(self) -> bool:
        return bool(self.requirements)

    def __str__(self) -> str:
        return ','.join(str(requirement) for requirement in self.requirements)

    def match(self, labels: Optional[Mapping[str, str]]) -> bool:
        return all(requirement.match(labels or {}) for requirement in self.requirements)

    def extend(self, requirements: Iterable[Requirement]) -> "Selector":
        return Selector(self.requirements + tuple(requirements))

    @classmethod
    def exists(cls, *keys: str) -> "Selector":
        return cls(tuple(Requirement(key, Operator.EXISTS) for key in keys))

    @classmethod
    def from_label_selector(cls, label_selector: Optional[Mapping[str, Any]]) -> "Selector":
        """
        Convert a ``LabelSelector`` mapping of Kubernetes to a selector.
        """
        if not label_selector:
            return cls()
        requirements: List[Requirement] = []
        for key, val in (label_selector.get('matchLabels') or {}).items():
            requirements.append(Requirement(key, Operator.EQUALS, (str(val),)))
        for expression in label_selector.get('matchExpressions') or []:
            key = expression.get('key')
            operator = expression.get('operator')
            values = tuple(str(value) for value in expression.get('values') or [])
            if not key:
                raise SelectorParseError(f"A selector expression without a key: {expression!r}")
            if operator == 'In':
                requirements.append(Requirement(key, Operator.IN, values))
            elif operator == 'NotIn':
                requirements.append(Requirement(key, Operator.NOT_IN, values))
            elif operator == 'Exists':
                requirements.append(Requirement(key, Operator.EXISTS))
            elif operator == 'DoesNotExist':
                requirements.append(Requirement(key, Operator.DOES_NOT_EXIST))
            else:
                raise SelectorParseError(f"Unsupported selector operator: {operator!r}")
            if operator in ('In', 'NotIn') and not values:
                raise SelectorParseError(f"No values for the {operator!r} operator of {key!r}.")
        return cls(tuple(requirements))

    @classmethod
    def parse(cls, text: Optional[str]) -> "Selector":
        """
        Parse a selector string as used in ``kubectl -l`` & the API queries.
        """
        return cls(tuple(_parse(text or '')))


# The label keys can be prefixed with a DNS subdomain: "example.com/name".
_KEY = r'[A-Za-z0-9]([-A-Za-z0-9_./]*[A-Za-z0-9])?'
_VALUE = r'([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?'
_SET_RE = re.compile(rf'^({_KEY})\s+(in|notin)\s*\(([^()]*)\)$')
_EQ_RE = re.compile(rf'^({_KEY})\s*(==|=|!=)\s*({_VALUE})$')
_EXISTS_RE = re.compile(rf'^(!?)\s*({_KEY})$')
_VALUE_RE = re.compile(rf'^{_VALUE}$')


def _split(text: str) -> Iterator[str]:
    """ Split by commas, but not by those inside the parentheses of the sets. """
    depth = 0
    start = 0
    for idx, char in enumerate(text):
        if char == '(':
            depth += 1
            if depth > 1:
                raise SelectorParseError(f"Nested parentheses in the selector: {text!r}")
        elif char == ')':
            depth -= 1
            if depth < 0:
                raise SelectorParseError(f"Unbalanced parentheses in the selector: {text!r}")
        elif char == ',' and depth == 0:
            yield text[start:idx]
            start = idx + 1
    if depth != 0:
        raise SelectorParseError(f"Unbalanced parentheses in the selector: {text!r}")
    yield text[start:]


def _parse(text: str) -> Iterator[Requirement]:
    if not text.strip():
        return
    for term in (term.strip() for term in _split(text)):
        if not term:
            raise SelectorParseError(f"An empty term in the selector: {text!r}")
        elif match := _SET_RE.match(term):
            values = tuple(value.strip() for value in match.group(4).split(','))
            if not all(values) or not all(_VALUE_RE.match(value) for value in values):
                raise SelectorParseError(f"Malformed values in the selector term: {term!r}")
            operator = Operator.IN if match.group(3) == 'in' else Operator.NOT_IN
            yield Requirement(match.group(1), operator, values)
        elif match := _EQ_RE.match(term):
            operator = Operator.NOT_EQUALS if match.group(3) == '!=' else Operator.EQUALS
            yield Requirement(match.group(1), operator, (match.group(4),))
        elif match := _EXISTS_RE.match(term):
            operator = Operator.DOES_NOT_EXIST if match.group(1) else Operator.EXISTS
            yield Requirement(match.group(2), operator)
        else:
            raise SelectorParseError(f"Malformed selector term: {term!r}")
