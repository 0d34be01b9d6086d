import json
import os
import tempfile
from typing import Iterator, List, Optional, Set

from run_log import RunLog
from unit_models import CheckpointError, Unit, decode_record, pending_payload

DEFAULT_OUTPUT = "unit_scrape_results.jsonl"
DEFAULT_SNAPSHOT = "remaining_units.json"


def iter_completed(path: str) -> Iterator[Unit]:
    """Replay the results log one record per line.

    A line that does not decode is corruption and stops the run; it is never
    skipped, otherwise the unit would be scraped and written a second time.
    """
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield decode_record(line)
                except (json.JSONDecodeError, ValueError, TypeError) as exc:
                    raise CheckpointError(
                        f"malformed record in {path} at line {line_number}: {exc}"
                    ) from exc
    except OSError as exc:
        raise CheckpointError(f"could not read results log {path}: {exc}") from exc


def load_completed_ids(path: str) -> Set[str]:
    return {unit.id for unit in iter_completed(path)}


def load_completed_units(path: str) -> List[Unit]:
    return list(iter_completed(path))


def load_pending_snapshot(path: str) -> Optional[List[Unit]]:
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise CheckpointError(f"could not load pending snapshot {path}: {exc}") from exc

    if not isinstance(payload, list):
        raise CheckpointError(f"pending snapshot {path} is not a JSON array")

    units = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise CheckpointError(f"pending snapshot {path} entry {index} is not an object")
        try:
            units.append(Unit.from_record(entry))
        except (ValueError, TypeError) as exc:
            raise CheckpointError(f"pending snapshot {path} entry {index}: {exc}") from exc
    return units


def write_pending_snapshot(path: str, units: List[Unit]) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".remaining-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(pending_payload(units), f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def remove_pending_snapshot(path: str) -> bool:
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True


def filter_pending(units: List[Unit], completed_ids: Set[str], log: Optional[RunLog] = None) -> List[Unit]:
    """Drop completed and repeated ids, keeping the first occurrence in order."""
    seen: Set[str] = set()
    pending: List[Unit] = []
    for unit in units:
        if unit.id in completed_ids:
            if log:
                log.write(f"skip_completed id={unit.id} designation={unit.designation}", echo=False)
            continue
        if unit.id in seen:
            if log:
                log.write(f"skip_duplicate id={unit.id} designation={unit.designation}", echo=False)
            continue
        seen.add(unit.id)
        pending.append(unit)
    return pending
