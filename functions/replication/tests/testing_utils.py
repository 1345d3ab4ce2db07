"""Shared sample data and helpers for the replication tests."""

from datetime import datetime, timedelta, timezone

VASA_MONARCHS = [
    {"id": "gustav-i-vasa", "name": "Gustav I Vasa", "reignFrom": "1523-06-06", "reignTo": "1560-09-29"},
    {"id": "erik-xiv", "name": "Erik XIV", "reignFrom": "1560-09-29", "reignTo": "1568-09-29"},
    {"id": "johan-iii", "name": "Johan III", "reignFrom": "1568-09-30", "reignTo": "1592-11-17"},
    {"id": "sigismund", "name": "Sigismund", "reignFrom": "1592-11-17", "reignTo": "1599-07-24"},
    {"id": "karl-ix", "name": "Karl IX", "reignFrom": "1599-07-24", "reignTo": "1611-10-30"},
]

GUSTAV_II_ADOLF = {
    "id": "gustav-ii-adolf",
    "name": "Gustav II Adolf",
    "reignFrom": "1611-10-30",
    "reignTo": "1632-11-06",
}

ALL_VASA_IDS = [m["id"] for m in VASA_MONARCHS]


def member(external_id, name, born, died, monarch_ids=None, **extra):
    doc = {
        "externalId": external_id,
        "name": name,
        "born": born,
        "died": died,
        "monarchIds": list(monarch_ids or []),
    }
    doc.update(extra)
    return doc


class StepClock:
    """Returns a new timestamp, one step later, on every call."""

    def __init__(self, start=None, step=timedelta(minutes=1)):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        value = self.current
        self.current = self.current + self.step
        return value
