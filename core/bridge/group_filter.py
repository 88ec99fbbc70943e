"""
Group relevance filter

Decides whether a text-only group message deserves an answer. The decision is
a ruleset: each rule is an independent predicate over (text, mentions) and the
message is answered when any rule matches. New keyword sets are added by
appending a rule, not by touching the router.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Sequence, Tuple

from logger import get_logger

logger = get_logger("bridge.group_filter")

Predicate = Callable[[str, Sequence[object]], bool]


@dataclass(frozen=True)
class Rule:
    """A named predicate."""
    name: str
    predicate: Predicate

    def matches(self, text: str, mentions: Sequence[object]) -> bool:
        return self.predicate(text, mentions)


def mentions_rule(name: str = "mentioned") -> Rule:
    """Someone (normally the bot) was @-mentioned."""
    return Rule(name, lambda _text, mentions: len(mentions) > 0)


def pattern_rule(name: str, pattern: str, flags: int = 0) -> Rule:
    """Regex search over the raw text."""
    compiled = re.compile(pattern, flags)
    return Rule(name, lambda text, _mentions: compiled.search(text) is not None)


@dataclass(frozen=True)
class KeywordSet:
    """
    Substring keywords.

    Latin keyword sets are matched case-insensitively on ASCII word
    boundaries, so an adjacent CJK character counts as a boundary;
    other scripts have no case and no word separators, so they are plain
    substring matches.
    """
    name: str
    keywords: Tuple[str, ...]
    latin: bool = False
    _pattern: "re.Pattern[str]" = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.latin:
            alternation = "|".join(re.escape(k) for k in self.keywords)
            object.__setattr__(self, "_pattern", re.compile(rf"\b(?:{alternation})\b", re.IGNORECASE | re.ASCII))
        else:
            object.__setattr__(self, "_pattern", None)

    def contains(self, text: str) -> bool:
        if self._pattern is not None:
            return self._pattern.search(text) is not None
        return any(k in text for k in self.keywords)

    def as_rule(self) -> Rule:
        return Rule(self.name, lambda text, _mentions: self.contains(text))


QUESTION_WORDS = KeywordSet(
    "question_word",
    ("why", "how", "what", "when", "where", "who", "help"),
    latin=True,
)

REQUEST_VERBS = KeywordSet(
    "request_verb",
    ("帮", "麻烦", "请", "能否", "可以", "解释", "看看", "排查", "分析", "总结", "写", "改", "修", "查", "对比", "翻译"),
)

ADDRESS_TERMS: Tuple[str, ...] = ("moltbot", "bot", "assistant", "助手", "智能体", "小机")


def address_rule(terms: Iterable[str] = ADDRESS_TERMS, name: str = "addressed") -> Rule:
    """Text opens with an address term followed by whitespace or punctuation."""
    alternation = "|".join(re.escape(t) for t in terms)
    return pattern_rule(name, rf"^(?:{alternation})[\s,:，：]", re.IGNORECASE)


DEFAULT_RULES: Tuple[Rule, ...] = (
    mentions_rule(),
    pattern_rule("question_mark", r"[？?]$"),
    QUESTION_WORDS.as_rule(),
    REQUEST_VERBS.as_rule(),
    address_rule(),
)


class GroupRelevanceFilter:
    """
    Any-match evaluation of a ruleset.

    Args:
        rules: ordered rules; defaults to DEFAULT_RULES
    """

    def __init__(self, rules: Iterable[Rule] = DEFAULT_RULES) -> None:
        self._rules: List[Rule] = list(rules)

    @property
    def rules(self) -> List[Rule]:
        return list(self._rules)

    def with_rule(self, rule: Rule) -> "GroupRelevanceFilter":
        """New filter with *rule* appended."""
        return GroupRelevanceFilter([*self._rules, rule])

    def matching_rule(self, text: str, mentions: Sequence[object]) -> str:
        """Name of the first matching rule, or "" when none matches."""
        for rule in self._rules:
            if rule.matches(text, mentions):
                return rule.name
        return ""

    def should_respond(self, text: str, mentions: Sequence[object]) -> bool:
        matched = self.matching_rule(text, mentions)
        if not matched:
            logger.debug("Group message ignored", extra={"text_preview": text[:50]})
        return bool(matched)


def should_respond(text: str, mentions: Sequence[object]) -> bool:
    """Default ruleset decision."""
    return GroupRelevanceFilter().should_respond(text, mentions)
