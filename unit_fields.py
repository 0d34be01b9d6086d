import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from bs4 import BeautifulSoup

from run_log import RunLog
from unit_models import CardFacts, OverviewFacts, facts_from_dict

KIND_DEFAULTS = {"str": "", "int": 0, "bool": False}
WHITESPACE_RE = re.compile(r"\s+")
INT_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class FieldRule:
    name: str
    pattern: re.Pattern
    kind: str = "str"
    group: int = 1
    default: Optional[object] = None
    marker: str = "checked"
    transform: Optional[Callable[[str], str]] = None

    def __post_init__(self) -> None:
        if self.kind not in KIND_DEFAULTS:
            raise ValueError(f"unknown field kind {self.kind!r} for {self.name}")

    @property
    def default_value(self) -> object:
        return KIND_DEFAULTS[self.kind] if self.default is None else self.default


@dataclass(frozen=True)
class FieldResult:
    name: str
    value: object
    matched: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def clean_text(value: str) -> str:
    if "<" not in value and "&" not in value:
        return WHITESPACE_RE.sub(" ", value).strip()
    text = BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
    return WHITESPACE_RE.sub(" ", text).strip()


def parse_int_value(value: str) -> Optional[int]:
    cleaned = value.strip().replace(",", "")
    if not INT_RE.fullmatch(cleaned):
        return None
    return int(cleaned)


def extract_field(text: str, rule: FieldRule) -> FieldResult:
    """Apply one rule to a document.

    Never raises: an unexpected capture shape or a failing transform is
    reported through ``FieldResult.error`` and the field keeps its default.
    """
    default = rule.default_value
    match = rule.pattern.search(text)
    if not match:
        return FieldResult(rule.name, default)

    if rule.group > (match.re.groups or 0):
        return FieldResult(
            rule.name,
            default,
            matched=True,
            error=f"pattern has no capture group {rule.group}",
        )
    captured = match.group(rule.group) or ""

    if rule.kind == "bool":
        return FieldResult(rule.name, rule.marker in captured, matched=True)

    if rule.kind == "int":
        parsed = parse_int_value(captured)
        return FieldResult(rule.name, default if parsed is None else parsed, matched=True)

    if rule.transform is None:
        return FieldResult(rule.name, captured.strip(), matched=True)
    try:
        return FieldResult(rule.name, rule.transform(captured), matched=True)
    except Exception as exc:  # pluggable transform
        return FieldResult(rule.name, default, matched=True, error=f"transform failed: {exc}")


def extract_results(text: str, rules: Iterable[FieldRule]) -> Tuple[FieldResult, ...]:
    return tuple(extract_field(text, rule) for rule in rules)


def extract_fields(
    text: str,
    rules: Iterable[FieldRule],
    log: Optional[RunLog] = None,
    context: str = "",
) -> Dict[str, object]:
    values: Dict[str, object] = {}
    for result in extract_results(text, rules):
        values[result.name] = result.value
        if log is None:
            continue
        if result.error:
            log.write(f"field_extract_failed unit={context} field={result.name} error={result.error}")
        elif not result.matched:
            log.debug(f"field_missing unit={context} field={result.name}")
    return values


def _input(name: str, element_id: str, kind: str = "str") -> FieldRule:
    return FieldRule(
        name=name,
        pattern=re.compile(rf'id="{element_id}".*value="([^"]*)"'),
        kind=kind,
        transform=clean_text if kind == "str" else None,
    )


def _flag(name: str, element_id: str) -> FieldRule:
    return FieldRule(name=name, pattern=re.compile(rf'id="{element_id}"(.*)'), kind="bool")


def _block(name: str, element_id: str) -> FieldRule:
    # value sits alone on the line after the opening tag
    return FieldRule(
        name=name,
        pattern=re.compile(rf'id="{element_id}".*>.*\n(.*)\n.*<'),
        transform=clean_text,
    )


def _definition(name: str, label: str, value_pattern: str, kind: str = "str") -> FieldRule:
    return FieldRule(
        name=name,
        pattern=re.compile(rf"<dt>{re.escape(label)}</dt>.*\n.*<dd>({value_pattern})</dd>"),
        kind=kind,
        transform=clean_text if kind == "str" else None,
    )


CARD_RULES: Tuple[FieldRule, ...] = (
    _input("name", "Data_Name"),
    _input("model", "Data_Model"),
    _input("pv", "Data_PV", "int"),
    _input("tp", "Data_Type"),
    _input("sz", "Data_Size", "int"),
    _input("mv", "Data_Move", "int"),
    _input("role", "Data_Role"),
    _input("skill", "Data_Skill", "int"),
    _input("short_damage", "Data_Short", "int"),
    _flag("is_short_min_damage", "Data_ShortMin"),
    _input("medium_damage", "Data_Medium", "int"),
    _flag("is_medium_min_damage", "Data_MediumMin"),
    _input("long_damage", "Data_Long", "int"),
    _flag("is_long_min_damage", "Data_LongMin"),
    _input("extreme_damage", "Data_Extreme", "int"),
    _flag("is_extreme_min_damage", "Data_ExtremeMin"),
    _input("ov", "Data_Overheat", "int"),
    _input("armor", "Data_Armor", "int"),
    _input("structure", "Data_Structure", "int"),
    _input("threshold", "Data_Threshold", "int"),
    _block("specials", "Data_Specials"),
    _block("image_url", "Data_Image"),
)


OVERVIEW_RULES: Tuple[FieldRule, ...] = (
    _definition("tonnage", "Tonnage", r"[\d,]+", "int"),
    _definition("battle_value", "Battle Value", r"[\w,]+", "int"),
    _definition("cost", "Cost", r"[\w,]+", "int"),
    _definition("rules_level", "Rules Level", r"\w+"),
    _definition("technology", "Technology", r"[a-zA-Z0-9 ,]+"),
    _definition("unit_type", "Unit Type", r"[a-zA-Z0-9 ,]+"),
    _definition("unit_role", "Unit Role", r"[a-zA-Z0-9 ,]+"),
    _definition("date_introduced", "Date Introduced", r"\d+", "int"),
    _definition("era", "Era", r"[a-zA-Z0-9 ,()\-]+"),
    _definition("notes", "Notes", r"[a-zA-Z0-9 ,()]+"),
)


def extract_card(
    html: str,
    rules: Iterable[FieldRule] = CARD_RULES,
    log: Optional[RunLog] = None,
    context: str = "",
) -> CardFacts:
    return facts_from_dict(CardFacts, extract_fields(html, rules, log, context))


def extract_overview(
    html: str,
    rules: Iterable[FieldRule] = OVERVIEW_RULES,
    log: Optional[RunLog] = None,
    context: str = "",
) -> OverviewFacts:
    return facts_from_dict(OverviewFacts, extract_fields(html, rules, log, context))
