from common.events import EventEmitter
from common.ids import generate_id, utc_now
from common.jsonio import atomic_write_json, quarantine_file

__all__ = [
    "EventEmitter",
    "generate_id",
    "utc_now",
    "atomic_write_json",
    "quarantine_file",
]
