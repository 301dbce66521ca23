"""Proposal description document: tagged-section encoder and decoder.

The description text is the wire contract between the publisher and anything
that reads proposals back from the governance contract. It is line-oriented
and label-stable:

    Impact Initiative Proposal

    Location: <city, state, country>
    Coordinates: <lat>, <lng>
    Impact Score: <int>
    Urgency: <low|medium|high>
    Category: <string>
    Verification Status: Verified via IPFS (CID: <cid>)

    Description:
    <free text>

    Current Conditions:
    - Weather: <conditions> (<temperature>°C)

    Recommended Actions:
    - <action>

    Related News:
    - <title> (<url>)

    Evidence:
    - Full Analysis: <gateway-url>/<cid>
    - Confidence Score: <int>%

A field or section whose data is absent is omitted entirely. The decoder maps
a missing label to None and treats a literal "N/A" value as absent as well.
Unknown header labels and unknown sections are ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import IMP_E_DOC_MALFORMED, IMP_E_EMPTY_DESCRIPTION, ValidationError, impact_error
from .models import GeoPoint, UrgencyTier

TITLE = "Impact Initiative Proposal"

LABEL_LOCATION = "Location"
LABEL_COORDINATES = "Coordinates"
LABEL_SCORE = "Impact Score"
LABEL_URGENCY = "Urgency"
LABEL_CATEGORY = "Category"
LABEL_VERIFICATION = "Verification Status"

SECTION_DESCRIPTION = "Description:"
SECTION_CONDITIONS = "Current Conditions:"
SECTION_ACTIONS = "Recommended Actions:"
SECTION_NEWS = "Related News:"
SECTION_EVIDENCE = "Evidence:"

SECTIONS = (SECTION_DESCRIPTION, SECTION_CONDITIONS, SECTION_ACTIONS, SECTION_NEWS, SECTION_EVIDENCE)

_VERIFIED_RE = re.compile(r"^Verified via IPFS \(CID: (?P<cid>[^)\s]+)\)$")
_WEATHER_RE = re.compile(r"^- Weather: (?P<cond>.*) \((?P<temp>-?\d+(?:\.\d+)?)°C\)$")
_NEWS_RE = re.compile(r"^- (?P<title>.*) \((?P<url>\S+)\)$")
_CONFIDENCE_RE = re.compile(r"^- Confidence Score: (?P<pct>\d+)%$")
_ANALYSIS_PREFIX = "- Full Analysis: "


@dataclass
class ProposalDocument:
    description: str
    impact_score: Optional[int] = None
    urgency: Optional[UrgencyTier] = None
    category: Optional[str] = None
    location: Optional[str] = None
    coordinates: Optional[GeoPoint] = None
    cid: Optional[str] = None
    weather: Optional[Tuple[str, float]] = None
    actions: List[str] = field(default_factory=list)
    news: List[Tuple[str, str]] = field(default_factory=list)
    analysis_url: Optional[str] = None
    confidence: Optional[int] = None


def _absent(value: Optional[str]) -> bool:
    return value is None or not value.strip() or value.strip().upper() == "N/A"


def _one_line(value: str) -> str:
    return " ".join(value.split())


# ---------------------------------------------------------------------------
# Encoder
# ---------------------------------------------------------------------------

def validate_description(text: Optional[str]) -> str:
    """Check free text can sit in the Description section; returns the body."""
    body = (text or "").strip("\n")
    if not body.strip():
        raise ValidationError(IMP_E_EMPTY_DESCRIPTION, "proposal description must not be empty")
    for line in body.splitlines():
        if line.strip() in SECTIONS or line.strip() == TITLE:
            raise ValidationError(
                IMP_E_DOC_MALFORMED, "description line collides with a section label", line=line.strip()
            )
    return body


def encode(doc: ProposalDocument) -> str:
    """Render the document text. Refuses an empty description."""
    body = validate_description(doc.description)

    header: List[str] = []
    if not _absent(doc.location):
        header.append(f"{LABEL_LOCATION}: {_one_line(doc.location or '')}")
    if doc.coordinates is not None:
        header.append(f"{LABEL_COORDINATES}: {doc.coordinates.lat:.6f}, {doc.coordinates.lng:.6f}")
    if doc.impact_score is not None:
        header.append(f"{LABEL_SCORE}: {int(doc.impact_score)}")
    if doc.urgency is not None:
        header.append(f"{LABEL_URGENCY}: {UrgencyTier(doc.urgency).value}")
    if not _absent(doc.category):
        header.append(f"{LABEL_CATEGORY}: {_one_line(doc.category or '')}")
    if not _absent(doc.cid):
        header.append(f"{LABEL_VERIFICATION}: Verified via IPFS (CID: {doc.cid})")

    blocks: List[List[str]] = [[TITLE]]
    if header:
        blocks.append(header)
    blocks.append([SECTION_DESCRIPTION, *body.splitlines()])
    if doc.weather is not None:
        cond, temp = doc.weather
        blocks.append([SECTION_CONDITIONS, f"- Weather: {_one_line(cond)} ({float(temp):.1f}°C)"])
    actions = [_one_line(a) for a in doc.actions if a and a.strip()]
    if actions:
        blocks.append([SECTION_ACTIONS, *(f"- {a}" for a in actions)])
    news = [(_one_line(t), u.strip()) for t, u in doc.news if t and t.strip() and u and u.strip()]
    if news:
        blocks.append([SECTION_NEWS, *(f"- {t} ({u})" for t, u in news)])
    evidence: List[str] = []
    if not _absent(doc.analysis_url):
        evidence.append(f"{_ANALYSIS_PREFIX}{doc.analysis_url}")
    if doc.confidence is not None:
        evidence.append(f"- Confidence Score: {int(doc.confidence)}%")
    if evidence:
        blocks.append([SECTION_EVIDENCE, *evidence])

    return "\n\n".join("\n".join(b) for b in blocks) + "\n"


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

_UNKNOWN_SECTION_RE = re.compile(r"^[A-Z][A-Za-z ]*:$")


def _split_sections(lines: List[str]) -> Tuple[List[str], Dict[str, List[str]]]:
    # A section label only counts after a blank line. Inside the free-text
    # description only the known labels end the section.
    header: List[str] = []
    sections: Dict[str, List[str]] = {}
    current = header
    current_name = ""
    prev_blank = True
    for line in lines:
        stripped = line.strip()
        is_label = stripped in SECTIONS or (
            current_name != SECTION_DESCRIPTION and _UNKNOWN_SECTION_RE.match(stripped) is not None
        )
        if prev_blank and is_label:
            current = sections.setdefault(stripped, [])
            current_name = stripped
            prev_blank = False
            continue
        current.append(line)
        prev_blank = not stripped
    return header, sections


def _trim(block: List[str]) -> List[str]:
    start, end = 0, len(block)
    while start < end and not block[start].strip():
        start += 1
    while end > start and not block[end - 1].strip():
        end -= 1
    return block[start:end]


def decode(text: str) -> ProposalDocument:
    lines = (text or "").replace("\r\n", "\n").split("\n")
    while lines and not lines[0].strip():
        lines.pop(0)
    if not lines or lines[0].strip() != TITLE:
        raise impact_error(IMP_E_DOC_MALFORMED, "missing proposal title line")

    header_lines, sections = _split_sections(lines[1:])

    fields: Dict[str, str] = {}
    for line in header_lines:
        if ": " in line:
            label, value = line.split(": ", 1)
            fields[label.strip()] = value.strip()

    doc = ProposalDocument(description="\n".join(_trim(sections.get(SECTION_DESCRIPTION, []))))

    if not _absent(fields.get(LABEL_LOCATION)):
        doc.location = fields[LABEL_LOCATION]
    if not _absent(fields.get(LABEL_COORDINATES)):
        try:
            lat_s, lng_s = fields[LABEL_COORDINATES].split(",", 1)
            doc.coordinates = GeoPoint(lat=float(lat_s), lng=float(lng_s))
        except ValueError as e:
            raise impact_error(IMP_E_DOC_MALFORMED, "bad coordinates line") from e
    if not _absent(fields.get(LABEL_SCORE)):
        try:
            doc.impact_score = int(fields[LABEL_SCORE])
        except ValueError as e:
            raise impact_error(IMP_E_DOC_MALFORMED, "bad impact score") from e
    if not _absent(fields.get(LABEL_URGENCY)):
        try:
            doc.urgency = UrgencyTier(fields[LABEL_URGENCY].lower())
        except ValueError as e:
            raise impact_error(IMP_E_DOC_MALFORMED, "bad urgency tier") from e
    if not _absent(fields.get(LABEL_CATEGORY)):
        doc.category = fields[LABEL_CATEGORY]
    if not _absent(fields.get(LABEL_VERIFICATION)):
        m = _VERIFIED_RE.match(fields[LABEL_VERIFICATION])
        if m:
            doc.cid = m.group("cid")

    for line in _trim(sections.get(SECTION_CONDITIONS, [])):
        m = _WEATHER_RE.match(line.strip())
        if m and not _absent(m.group("cond")):
            doc.weather = (m.group("cond"), float(m.group("temp")))

    for line in _trim(sections.get(SECTION_ACTIONS, [])):
        s = line.strip()
        if s.startswith("- ") and not _absent(s[2:]):
            doc.actions.append(s[2:].strip())

    for line in _trim(sections.get(SECTION_NEWS, [])):
        m = _NEWS_RE.match(line.strip())
        if m:
            doc.news.append((m.group("title"), m.group("url")))

    for line in _trim(sections.get(SECTION_EVIDENCE, [])):
        s = line.strip()
        if s.startswith(_ANALYSIS_PREFIX) and not _absent(s[len(_ANALYSIS_PREFIX):]):
            doc.analysis_url = s[len(_ANALYSIS_PREFIX):].strip()
            continue
        m = _CONFIDENCE_RE.match(s)
        if m:
            doc.confidence = int(m.group("pct"))

    return doc
