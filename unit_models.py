import json
from dataclasses import asdict, dataclass, field, fields
from typing import Dict, List, Optional


class ScrapeError(Exception):
    """Fatal condition that stops the whole run."""


class ConfigError(ScrapeError):
    pass


class DiscoveryError(ScrapeError):
    pass


class CheckpointError(ScrapeError):
    pass


class CustomCardFetchError(ScrapeError):
    pass


class OverviewFetchError(ScrapeError):
    pass


class SinkError(ScrapeError):
    pass


@dataclass
class CardFacts:
    name: str = ""
    model: str = ""
    pv: int = 0
    tp: str = ""
    sz: int = 0
    mv: int = 0
    role: str = ""
    skill: int = 0
    short_damage: int = 0
    is_short_min_damage: bool = False
    medium_damage: int = 0
    is_medium_min_damage: bool = False
    long_damage: int = 0
    is_long_min_damage: bool = False
    extreme_damage: int = 0
    is_extreme_min_damage: bool = False
    ov: int = 0
    armor: int = 0
    structure: int = 0
    threshold: int = 0
    specials: str = ""
    image_url: str = ""


@dataclass
class OverviewFacts:
    tonnage: int = 0
    battle_value: int = 0
    cost: int = 0
    rules_level: str = ""
    technology: str = ""
    unit_type: str = ""
    unit_role: str = ""
    date_introduced: int = 0
    era: str = ""
    notes: str = ""


@dataclass
class Unit:
    id: str
    designation: str
    card: CardFacts = field(default_factory=CardFacts)
    overview: OverviewFacts = field(default_factory=OverviewFacts)

    def to_record(self) -> Dict[str, object]:
        return asdict(self)

    def to_pending(self) -> Dict[str, str]:
        return {"id": self.id, "designation": self.designation}

    @classmethod
    def from_record(cls, record: Dict[str, object]) -> "Unit":
        unit_id = record.get("id")
        if not isinstance(unit_id, str) or not unit_id:
            raise ValueError("record has no string 'id'")
        designation = record.get("designation") or ""
        if not isinstance(designation, str):
            raise ValueError("record 'designation' is not a string")
        return cls(
            id=unit_id,
            designation=designation,
            card=facts_from_dict(CardFacts, record.get("card")),
            overview=facts_from_dict(OverviewFacts, record.get("overview")),
        )


def facts_from_dict(facts_type, data: Optional[object]):
    if not isinstance(data, dict):
        return facts_type()
    known = {f.name for f in fields(facts_type)}
    return facts_type(**{key: value for key, value in data.items() if key in known})


def encode_record(unit: Unit) -> str:
    return json.dumps(unit.to_record(), sort_keys=True)


def decode_record(line: str) -> Unit:
    payload = json.loads(line)
    if not isinstance(payload, dict):
        raise ValueError("record is not a JSON object")
    return Unit.from_record(payload)


def pending_payload(units: List[Unit]) -> List[Dict[str, str]]:
    return [unit.to_pending() for unit in units]


@dataclass(frozen=True)
class ScrapeConfig:
    base_url: str
    listing_path: str
    detail_path: str
    custom_card_path: str
    filter_query: str = ""

    def listing_url(self) -> str:
        url = f"{self.base_url}{self.listing_path}"
        if self.filter_query:
            url = f"{url}?{self.filter_query.lstrip('?')}"
        return url

    def custom_card_url(self, unit: Unit) -> str:
        return f"{self.base_url}{self.custom_card_path}/{unit.id}"

    def overview_url(self, unit: Unit) -> str:
        return f"{self.base_url}{self.detail_path}/{unit.id}/{unit.designation}"
