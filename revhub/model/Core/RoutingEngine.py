import logging
import threading
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import ConfigurationConflict
from .header import ForwardingRule

logger = logging.getLogger("revhub.routing")


class RuleSet:
    """
    Immutable, validated sequence of forwarding rules.

    Validation happens here, once, so that matching never has to resolve an
    ambiguity at request time: two rules claiming the same prefix raise
    ConfigurationConflict before the server starts listening.
    """

    __slots__ = ("_rules", "_index")

    def __init__(self, rules: Iterable[ForwardingRule] = ()):
        rules = tuple(rules)
        owners: Dict[str, int] = {}
        for position, rule in enumerate(rules):
            if not isinstance(rule, ForwardingRule):
                raise ConfigurationConflict(f"Rule #{position} is not a ForwardingRule: {rule!r}")
            for prefix in rule.path_prefixes:
                if prefix in owners:
                    raise ConfigurationConflict(
                        f"Path prefix {prefix!r} is declared by rule #{owners[prefix]} and rule #{position}"
                    )
                owners[prefix] = position

        # Longest prefix first; lengths are unique per matching chain since prefixes are unique.
        index = sorted(
            ((prefix, rules[position]) for prefix, position in owners.items()),
            key=lambda item: len(item[0]),
            reverse=True,
        )
        object.__setattr__(self, "_rules", rules)
        object.__setattr__(self, "_index", tuple(index))

    def __setattr__(self, name, value):
        raise AttributeError("RuleSet is immutable")

    def __iter__(self) -> Iterator[ForwardingRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __getitem__(self, position: int) -> ForwardingRule:
        return self._rules[position]

    def __repr__(self) -> str:
        return f"RuleSet({[rule.describe() for rule in self._rules]})"

    @property
    def rules(self) -> Tuple[ForwardingRule, ...]:
        return self._rules

    def prefixes(self) -> List[Tuple[str, ForwardingRule]]:
        return list(self._index)

    def to_list(self) -> List[dict]:
        return [rule.to_dict() for rule in self._rules]


def prefix_matches(prefix: str, path: str) -> bool:
    """
    Segment-aware prefix test: ``/api`` matches ``/api`` and ``/api/x`` but not ``/api2``.
    """
    if prefix == "/":
        return path.startswith("/")
    return path == prefix or path.startswith(prefix + "/")


def longest_match(path: str, rule_set: RuleSet) -> Optional[Tuple[str, ForwardingRule]]:
    for prefix, rule in rule_set.prefixes():
        if prefix_matches(prefix, path):
            return prefix, rule
    return None


class RoutingEngine:
    """Longest-prefix router over a swappable RuleSet."""

    def __init__(self, rule_set: Optional[RuleSet] = None):
        self._rule_set = rule_set if rule_set is not None else RuleSet()
        self._lock = threading.Lock()

    @property
    def rule_set(self) -> RuleSet:
        return self._rule_set

    def swap(self, rule_set: RuleSet) -> RuleSet:
        """Replace the active rule set atomically and return the previous one."""
        if not isinstance(rule_set, RuleSet):
            raise ConfigurationConflict(f"Expected a RuleSet, got {type(rule_set).__name__}")
        with self._lock:
            previous, self._rule_set = self._rule_set, rule_set
        logger.info(f"🔁 Rule set replaced ({len(previous)} -> {len(rule_set)} rules)")
        return previous

    def match(self, path: str, rule_set: Optional[RuleSet] = None) -> Optional[ForwardingRule]:
        """
        Select the rule whose matching prefix is longest.

        Args:
            path: request path; any query string is ignored
            rule_set: rule set to match against (defaults to the active one)

        Returns:
            The matching ForwardingRule, or None when nothing matches
        """
        found = self.match_prefix(path, rule_set)
        return found[1] if found else None

    def match_prefix(self, path: str, rule_set: Optional[RuleSet] = None) -> Optional[Tuple[str, ForwardingRule]]:
        rule_set = rule_set if rule_set is not None else self._rule_set
        path = path.split("?", 1)[0] or "/"
        return longest_match(path, rule_set)
