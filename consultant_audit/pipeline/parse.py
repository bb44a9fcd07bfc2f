"""
Pipeline Stage 2: PARSE — HTML profile page → ParsedProfile.

Pure: no I/O. Profile pages use inconsistent heading levels (H2/H3/H4) for the
same section, so sections are classified by heading text, and a section's
content is everything after the heading up to the next heading.

Only the consultant name plus at least one profile marker (registration number,
photo block or a recognised section) are required; every other field is
optional and simply comes back empty.
"""
import logging
import re
from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Dict, List, Optional

from bs4 import BeautifulSoup

from consultant_audit.errors import ParseError, PARSE
from consultant_audit.logging_config import log_stage
from consultant_audit.pipeline.base import StageAdapter

logger = logging.getLogger('consultant_audit.pipeline.parse')

ABOUT = 'about'
OVERVIEW = 'overview'
QUALIFICATIONS = 'qualifications'
SPECIALTIES = 'specialties'
TREATMENTS = 'treatments'
CONSULTATION_TIMES = 'consultation_times'
MEMBERSHIPS = 'memberships'
INSURERS = 'insurers'
LANGUAGES = 'languages'
PRACTISING_SINCE = 'practising_since'
SPECIAL_INTERESTS = 'special_interests'
RELATED_EXPERIENCE = 'related_experience'
LOCATIONS = 'locations'
CTA = 'cta'

_EXACT_HEADINGS = {
    'about': ABOUT,
    'overview': OVERVIEW,
    'qualifications': QUALIFICATIONS,
    'specialties': SPECIALTIES,
    'consultation times': CONSULTATION_TIMES,
    'memberships': MEMBERSHIPS,
    'languages spoken': LANGUAGES,
    'special interests': SPECIAL_INTERESTS,
    'other interests': SPECIAL_INTERESTS,
    'related experience': RELATED_EXPERIENCE,
}

_PREFIX_HEADINGS = {
    'practising since': PRACTISING_SINCE,
    'insurers': INSURERS,
    'locations': LOCATIONS,
}

_TREATMENT_PATTERNS = (
    'treatments and tests offered',
    'treatments, tests and scans',
    'specialises in the following',
    'specialises the following treatments',
    'performs the following treatments',
)

_CTA_PATTERNS = ('book online', 'ask a question', 'enquire now')

TITLE_PREFIXES = ('Professor', 'Prof', 'Dr', 'Mrs', 'Miss', 'Ms', 'Mr')

_HEADING_TAGS = ('h2', 'h3', 'h4')
_COOKIE_CONTAINERS = ('ccc', 'cookie-consent', 'onetrust-consent-sdk')
_PLACEHOLDER_MARKERS = ('page not found', 'page cannot be found', "we can't find", 'no longer available')

REGISTRATION_RE = re.compile(r'GMC\s*number:\s*([A-Za-z0-9-]+)', re.IGNORECASE)
YEAR_RE = re.compile(r'(\d{4})')


@dataclass
class ParsedProfile:
    slug: str
    name: str
    title_prefix: Optional[str] = None
    registration_number: Optional[str] = None
    booking_code: Optional[str] = None
    has_photo: bool = False
    bio: Optional[str] = None
    overview: Optional[str] = None
    related_experience: Optional[str] = None
    specialties: List[str] = field(default_factory=list)
    treatments: List[str] = field(default_factory=list)
    qualifications: Optional[str] = None
    memberships: List[str] = field(default_factory=list)
    insurers: List[str] = field(default_factory=list)
    consultation_times: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    clinical_interests: List[str] = field(default_factory=list)
    practising_since: Optional[int] = None
    hospital: Optional[str] = None
    online_bookable: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)

    def assessment_text(self) -> str:
        """Profile text handed to the AI assessor."""
        parts = [f"Name: {self.name}"]
        if self.specialties:
            parts.append(f"Specialties: {', '.join(self.specialties)}")
        if self.bio:
            parts.append(f"About:\n{self.bio}")
        if self.overview:
            parts.append(f"Overview:\n{self.overview}")
        if self.related_experience:
            parts.append(f"Related Experience:\n{self.related_experience}")
        if self.treatments:
            parts.append(f"Treatments: {', '.join(self.treatments)}")
        if self.qualifications:
            parts.append(f"Qualifications: {self.qualifications}")
        if self.clinical_interests:
            parts.append(f"Clinical Interests: {', '.join(self.clinical_interests)}")
        return '\n\n'.join(parts)


def classify_heading(text: str) -> Optional[str]:
    """Map heading text to a section category, or None if unrecognised."""
    lower = ' '.join(text.split()).lower()
    if not lower:
        return None
    if any(p in lower for p in _CTA_PATTERNS):
        return CTA
    if lower in _EXACT_HEADINGS:
        return _EXACT_HEADINGS[lower]
    for prefix, category in _PREFIX_HEADINGS.items():
        if lower.startswith(prefix):
            return category
    if any(p in lower for p in _TREATMENT_PATTERNS):
        return TREATMENTS
    return None


def parse_practising_year(text: str) -> Optional[int]:
    match = YEAR_RE.search(text or '')
    if not match:
        return None
    year = int(match.group(1))
    if 1950 <= year <= date.today().year:
        return year
    return None


def parse_profile(html: str, slug: str) -> ParsedProfile:
    """Parse one profile page. Raises ParseError when the page is not a consultant profile."""
    if not html or not html.strip():
        raise ParseError("Empty HTML", slug, code='empty')

    soup = BeautifulSoup(html, 'html.parser')

    if _looks_like_placeholder(soup):
        raise ParseError("Page is a placeholder or not-found page, not a profile", slug, code='placeholder')

    h1_text = _consultant_heading(soup)
    if not h1_text:
        raise ParseError("Consultant name heading not found", slug, code='missing_name')
    name, title_prefix = _name_and_title(h1_text)

    body_text = soup.get_text(' ', strip=True)
    registration = _registration_number(body_text)
    has_photo = _detect_photo(soup)
    sections = _collect_sections(soup)

    if not registration and not has_photo and not sections:
        raise ParseError("No consultant profile markers found", slug, code='unrecognised')

    practising_since = None
    for category, heading, nodes in sections:
        if category == PRACTISING_SINCE:
            practising_since = parse_practising_year(heading) or parse_practising_year(_text_of(nodes))
            if practising_since:
                break

    locations = _list_items(sections, LOCATIONS)

    return ParsedProfile(
        slug=slug,
        name=name,
        title_prefix=title_prefix,
        registration_number=registration,
        booking_code=registration if registration and registration.isdigit() else None,
        has_photo=has_photo,
        bio=_section_text(sections, ABOUT),
        overview=_section_text(sections, OVERVIEW),
        related_experience=_section_text(sections, RELATED_EXPERIENCE),
        specialties=_list_items(sections, SPECIALTIES),
        treatments=_list_items(sections, TREATMENTS),
        qualifications=_section_text(sections, QUALIFICATIONS),
        memberships=_list_items(sections, MEMBERSHIPS),
        insurers=_list_items(sections, INSURERS),
        consultation_times=_list_items(sections, CONSULTATION_TIMES),
        languages=_list_items(sections, LANGUAGES),
        clinical_interests=_list_items(sections, SPECIAL_INTERESTS),
        practising_since=practising_since,
        hospital=locations[0] if locations else None,
        online_bookable=_detect_online_booking(soup),
    )


class ParseStage(StageAdapter):
    """value: CrawlResult → ParsedProfile"""
    stage = PARSE
    error_cls = ParseError

    def execute(self, slug, value, progress=None):
        parsed = parse_profile(value.html, slug)
        log_stage(logger, logging.INFO, PARSE, slug, 'success',
                  f"{len(parsed.specialties)} specialties, photo={parsed.has_photo}", progress)
        return parsed


# ── Private helpers ──────────────────────────────────────────────────────────

def _in_cookie_banner(tag) -> bool:
    for parent in tag.parents:
        if not hasattr(parent, 'get'):
            continue
        ident = parent.get('id') or ''
        classes = parent.get('class') or []
        if ident in _COOKIE_CONTAINERS or any(c in _COOKIE_CONTAINERS for c in classes):
            return True
    return False


def _looks_like_placeholder(soup) -> bool:
    title = soup.title.get_text(' ', strip=True).lower() if soup.title else ''
    if any(m in title for m in _PLACEHOLDER_MARKERS):
        return True
    h1 = soup.find('h1')
    h1_text = h1.get_text(' ', strip=True).lower() if h1 else ''
    return any(m in h1_text for m in _PLACEHOLDER_MARKERS)


def _consultant_heading(soup) -> str:
    tagged = soup.find('h1', attrs={'itemprop': 'name'})
    if tagged and tagged.get_text(strip=True):
        return tagged.get_text(' ', strip=True)

    meta = soup.find('meta', attrs={'name': 'fullname'})
    if meta and (meta.get('content') or '').strip():
        return meta['content'].strip()

    for h1 in soup.find_all('h1'):
        if _in_cookie_banner(h1):
            continue
        text = h1.get_text(' ', strip=True)
        if text:
            return text
    return ''


def _name_and_title(h1_text: str):
    name = ' '.join(h1_text.split())
    for prefix in TITLE_PREFIXES:
        if re.match(rf'^{prefix}\b\.?\s', name, re.IGNORECASE):
            return name, 'Professor' if prefix == 'Prof' else prefix
    return name, None


def _registration_number(body_text: str) -> Optional[str]:
    match = REGISTRATION_RE.search(body_text)
    return match.group(1) if match else None


def _detect_photo(soup) -> bool:
    aside = soup.select_one('aside.consultant__image')
    if aside is None:
        return False
    img = aside.find('img')
    src = (img.get('src') or '').strip() if img else ''
    return src.startswith('http') or src.startswith('/')


def _detect_online_booking(soup) -> bool:
    for iframe in soup.find_all('iframe'):
        if 'book' in (iframe.get('src') or '').lower():
            return True
    return soup.select_one('[class*="booking"], [id*="booking"]') is not None


def _collect_sections(soup):
    """[(category, heading_text, [content nodes])] in document order."""
    sections = []
    for heading in soup.find_all(_HEADING_TAGS):
        text = heading.get_text(' ', strip=True)
        category = classify_heading(text)
        if category is None or category == CTA:
            continue
        nodes = []
        for sibling in heading.find_next_siblings():
            if sibling.name in _HEADING_TAGS:
                break
            nodes.append(sibling)
        sections.append((category, text, nodes))
    return sections


def _text_of(nodes) -> str:
    return '\n'.join(n.get_text(' ', strip=True) for n in nodes if n.get_text(strip=True))


def _section_text(sections, category) -> Optional[str]:
    chunks = [_text_of(nodes) for cat, _, nodes in sections if cat == category]
    text = '\n\n'.join(c for c in chunks if c).strip()
    return text or None


def _list_items(sections, category) -> List[str]:
    items = []
    for cat, _, nodes in sections:
        if cat != category:
            continue
        for node in nodes:
            lis = node.find_all('li') if node.name != 'li' else [node]
            if lis:
                items.extend(li.get_text(' ', strip=True) for li in lis)
            else:
                text = node.get_text('\n', strip=True)
                items.extend(line.strip() for line in text.split('\n'))

    seen = set()
    result = []
    for item in items:
        item = re.sub(r',\s*$', '', item).strip()
        if item and item.lower() not in seen:
            seen.add(item.lower())
            result.append(item)
    return result
