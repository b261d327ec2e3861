"""
Builders for notes feed documents used across the test suite
"""

from datetime import datetime
from typing import Iterable, Optional, Sequence


def _iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def snapshot_note(
    note_id: int,
    created_at: datetime,
    comments: Sequence[tuple] = (("opened", None),),
    closed_at: Optional[datetime] = None,
    lat: float = 51.5,
    lon: float = -0.1,
) -> str:
    """
    One planet-dump note element. ``comments`` holds (action, timestamp)
    pairs; a None timestamp means the note's creation time.
    """
    closed = f' closed_at="{_iso(closed_at)}"' if closed_at else ""
    body = "".join(
        f'<comment action="{action}" timestamp="{_iso(ts or created_at)}" uid="7" user="mapper">'
        f"note {note_id} #{i}</comment>"
        for i, (action, ts) in enumerate(comments, start=1)
    )
    return (
        f'<note id="{note_id}" lat="{lat}" lon="{lon}" created_at="{_iso(created_at)}"{closed}>'
        f"{body}</note>\n"
    )


def snapshot_document(notes: Iterable[str]) -> bytes:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n<osm-notes>\n' + "".join(notes) + "</osm-notes>\n"
    ).encode()


def api_note(note_id: int, created_at: datetime, status: str = "open", comments: int = 1) -> str:
    stamp = created_at.strftime("%Y-%m-%d %H:%M:%S UTC")
    body = "".join(
        f"<comment><date>{stamp}</date><uid>7</uid><user>mapper</user>"
        f"<action>{'opened' if i == 1 else 'commented'}</action><text>c{i}</text></comment>"
        for i in range(1, comments + 1)
    )
    closed = f"<date_closed>{stamp}</date_closed>" if status == "closed" else ""
    return (
        f'<note lon="-0.1" lat="51.5"><id>{note_id}</id>'
        f"<date_created>{stamp}</date_created>{closed}<status>{status}</status>"
        f"<comments>{body}</comments></note>\n"
    )


def api_document(notes: Iterable[str]) -> bytes:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n<osm version="0.6" generator="OpenStreetMap server">\n'
        + "".join(notes)
        + "</osm>\n"
    ).encode()


