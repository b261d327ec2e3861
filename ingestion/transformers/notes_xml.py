"""
Extraction transform: notes XML bytes -> typed rows.

Understands both feed formats:

Snapshot (planet dump)::

    <note id="1" lat="51.5" lon="-0.1" created_at="2013-04-24T08:07:02Z" closed_at="...">
      <comment action="opened" timestamp="2013-04-24T08:07:02Z" uid="1" user="alice">text</comment>
    </note>

Incremental API::

    <note lon="-0.1" lat="51.5">
      <id>1</id><date_created>2013-04-24 08:07:02 UTC</date_created><status>open</status>
      <comments><comment><date>...</date><uid>1</uid><user>alice</user>
        <action>opened</action><text>text</text></comment></comments>
    </note>

``extract_rows`` is a module-level pure function so it can run in a process
pool; it receives only its own byte slice.
"""

import re
import xml.etree.ElementTree as ET
from typing import List, Optional, Tuple

from pydantic import ValidationError

from core.exceptions import DataFormatError
from core.timeutil import parse_timestamp
from ingestion.transformers.partitioner import RECORD_MARKER
from models.base import CommentAction, NoteStatus
from schemas.rows import CommentRow, NoteRow, RowBatch

_ROOT_CLOSE = re.compile(rb"\s*</osm(?:-notes)?>\s*$")


def extract_rows(chunk: bytes, partition_index: int = 0) -> RowBatch:
    """
    Parse every note element in ``chunk``.

    The slice may carry the document header (before the first note) or the
    root close tag (after the last one); both are discarded.

    Raises:
        DataFormatError: The slice is not well-formed notes XML
    """
    first = RECORD_MARKER.search(chunk)
    if first is None:
        return RowBatch(partition_index=partition_index)

    body = _ROOT_CLOSE.sub(b"", chunk[first.start():])
    try:
        root = ET.fromstring(b"<notes>" + body + b"</notes>")
    except ET.ParseError as e:
        raise DataFormatError(
            "Malformed notes XML",
            context={"partition_index": partition_index, "bytes": len(chunk)},
            original_exception=e,
        )

    batch = RowBatch(partition_index=partition_index)
    for element in root.findall("note"):
        try:
            if element.get("id") is not None:
                note, comments = _parse_snapshot_note(element)
            else:
                note, comments = _parse_api_note(element)
        except (TypeError, ValueError, ValidationError) as e:
            raise DataFormatError(
                "Invalid note element",
                context={
                    "partition_index": partition_index,
                    "note_id": element.get("id") or element.findtext("id"),
                },
                original_exception=e,
            )
        batch.notes.append(note)
        batch.comments.extend(comments)
    return batch


def _derive_status(closed: bool, comments: List[CommentRow], declared: Optional[str] = None) -> NoteStatus:
    if declared == NoteStatus.HIDDEN.value:
        return NoteStatus.HIDDEN
    if closed:
        return NoteStatus.CLOSED
    if any(c.action is CommentAction.REOPENED for c in comments):
        return NoteStatus.REOPENED
    return NoteStatus.OPEN


def _optional_int(raw: Optional[str]) -> Optional[int]:
    if raw is None or not raw.strip():
        return None
    return int(raw)


def _parse_snapshot_note(element: ET.Element) -> Tuple[NoteRow, List[CommentRow]]:
    note_id = int(element.get("id"))
    comments = [
        CommentRow(
            note_id=note_id,
            sequence=position,
            action=CommentAction(c.get("action")),
            created_at=parse_timestamp(c.get("timestamp")),
            user_id=_optional_int(c.get("uid")),
            username=c.get("user"),
            body=c.text,
        )
        for position, c in enumerate(element.findall("comment"), start=1)
    ]
    closed_at = parse_timestamp(element.get("closed_at"))
    note = NoteRow(
        note_id=note_id,
        latitude=float(element.get("lat")),
        longitude=float(element.get("lon")),
        created_at=parse_timestamp(element.get("created_at")),
        closed_at=closed_at,
        status=_derive_status(closed_at is not None, comments),
    )
    return note, comments


def _parse_api_note(element: ET.Element) -> Tuple[NoteRow, List[CommentRow]]:
    note_id = int(element.findtext("id"))
    comments = [
        CommentRow(
            note_id=note_id,
            sequence=position,
            action=CommentAction(c.findtext("action")),
            created_at=parse_timestamp(c.findtext("date")),
            user_id=_optional_int(c.findtext("uid")),
            username=c.findtext("user"),
            body=c.findtext("text"),
        )
        for position, c in enumerate(element.findall("comments/comment"), start=1)
    ]
    closed_at = parse_timestamp(element.findtext("date_closed"))
    declared = (element.findtext("status") or "").strip().lower()
    note = NoteRow(
        note_id=note_id,
        latitude=float(element.get("lat")),
        longitude=float(element.get("lon")),
        created_at=parse_timestamp(element.findtext("date_created")),
        closed_at=closed_at,
        status=_derive_status(declared == "closed" or closed_at is not None, comments, declared),
    )
    return note, comments
