from __future__ import annotations

import codecs
import logging
import re
import unicodedata
from dataclasses import dataclass

import requests
from bs4 import BeautifulSoup, Comment, Doctype, NavigableString, Tag

from .cache import TTLCache
from .errors import Unavailable

logger = logging.getLogger(__name__)

DEFAULT_SCRIPTURE_URL_TEMPLATE = (
    "https://w1.xianmijingzang.com/wap/tripitaka/id/43/subid/{book_id}/juan/{scroll}/"
)
DEFAULT_ENCODING = "gb18030"
NBSP = "\u00a0"

# Upstream annotation pair: <i><span>phonetic</span><span>character</span></i>
PAIR_TAG = "i"
UNIT_CLASS = "unit"
PHONETIC_CLASS = "py"
CHARACTER_CLASS = "hz"

# Block elements that should start on a new line when collapsing to text.
BLOCK_LEVEL_TAGS = {
    "address",
    "article",
    "aside",
    "blockquote",
    "dd",
    "div",
    "dl",
    "dt",
    "figcaption",
    "figure",
    "footer",
    "form",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "header",
    "hr",
    "li",
    "main",
    "nav",
    "ol",
    "p",
    "pre",
    "section",
    "table",
    "ul",
    "tr",
}
_DROP_TAGS = ["script", "style", "head", "title"]
_GB_FAMILY = {"gb2312", "gbk", "x-gbk", "cp936", "gb_2312-80", "euc-cn"}
_LATIN1_DEFAULTS = {"iso-8859-1", "latin-1", "latin1"}
_META_CHARSET = re.compile(rb"""<meta[^>]+charset\s*=\s*["']?\s*([A-Za-z0-9_\-]+)""", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class AnnotationUnit:
    phonetic: str
    text: str


# ---------- decoding ----------


def _canonical_encoding(name: str) -> str | None:
    lowered = name.strip().lower()
    if lowered in _GB_FAMILY:
        return DEFAULT_ENCODING
    try:
        return codecs.lookup(lowered).name
    except LookupError:
        return None


def decode_markup(raw: bytes, declared: str | None = None) -> str:
    """Decode upstream bytes, trusting a real charset over the GB18030 default.

    ``declared`` is the charset from the HTTP headers. The ISO-8859-1 value
    that HTTP libraries report when no charset was sent is ignored.
    """
    candidates: list[str] = []
    if declared and declared.strip().lower() not in _LATIN1_DEFAULTS:
        candidates.append(declared)
    match = _META_CHARSET.search(raw[:4096])
    if match:
        candidates.append(match.group(1).decode("ascii", errors="ignore"))
    candidates.append(DEFAULT_ENCODING)
    for name in candidates:
        encoding = _canonical_encoding(name)
        if encoding is None:
            continue
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode(DEFAULT_ENCODING, errors="replace")


# ---------- markup helpers ----------


def _soup(markup: str) -> BeautifulSoup:
    return BeautifulSoup(markup, "html.parser")


def _content_root(soup: BeautifulSoup) -> Tag:
    return soup.body if soup.body is not None else soup


def _drop_non_content(soup: BeautifulSoup) -> None:
    for node in list(soup.contents):
        if isinstance(node, Doctype):
            node.extract()
    for tag in soup.find_all(_DROP_TAGS):
        tag.decompose()


def _is_punctuation_text(text: str) -> bool:
    stripped = text.strip()
    if not stripped:
        return False
    return all(unicodedata.category(ch).startswith("P") for ch in stripped)


def _pair_spans(tag: Tag) -> tuple[Tag, Tag] | None:
    """Return (phonetic, character) spans when ``tag`` is an annotation pair."""
    if tag.name != PAIR_TAG:
        return None
    elements: list[Tag] = []
    for child in tag.children:
        if isinstance(child, Tag):
            elements.append(child)
        elif isinstance(child, NavigableString) and not isinstance(child, Comment):
            if str(child).strip():
                return None
    if len(elements) != 2 or any(el.name != "span" for el in elements):
        return None
    return elements[0], elements[1]


def _unit_parts(tag: Tag) -> tuple[str, str] | None:
    """Return (phonetic, character) text for a stacked unit."""
    if tag.name != "span" or UNIT_CLASS not in (tag.get("class") or []):
        return None
    top = tag.find("span", class_=PHONETIC_CLASS, recursive=False)
    bottom = tag.find("span", class_=CHARACTER_CLASS, recursive=False)
    if bottom is None:
        return None
    phonetic = top.get_text().replace(NBSP, " ").strip() if top is not None else ""
    return phonetic, bottom.get_text()


def _new_pair(soup: BeautifulSoup, phonetic: str, character: Tag) -> Tag:
    pair = soup.new_tag(PAIR_TAG)
    top = soup.new_tag("span")
    top.string = phonetic
    pair.append(top)
    pair.append(character)
    return pair


# ---------- display transforms ----------


def repair_nested_punctuation(soup: BeautifulSoup) -> int:
    """Move punctuation spans out of the character span they were nested in.

    Upstream pages render ``<i><span>py</span><span>字<span>，</span></span></i>``,
    which leaves the comma without its own annotation slot. Each such span
    becomes a sibling pair with a blank phonetic component, placed directly
    after the pair it came from. Returns the number of spans moved.
    """
    moved = 0
    for pair in list(soup.find_all(PAIR_TAG)):
        spans = _pair_spans(pair)
        if spans is None:
            continue
        _, character = spans
        nested = [
            child
            for child in character.find_all("span", recursive=False)
            if _is_punctuation_text(child.get_text())
        ]
        anchor = pair
        for punct in nested:
            punct.extract()
            sibling = _new_pair(soup, NBSP, punct)
            anchor.insert_after(sibling)
            anchor = sibling
            moved += 1
    return moved


def stack_annotation_pairs(soup: BeautifulSoup) -> int:
    """Rewrite each annotation pair as one stacked unit, phonetic on top."""
    stacked = 0
    for pair in list(soup.find_all(PAIR_TAG)):
        spans = _pair_spans(pair)
        if spans is None:
            continue
        phonetic_span, character_span = spans
        phonetic = phonetic_span.get_text().replace(NBSP, " ").strip()
        character = character_span.get_text().strip()
        unit = soup.new_tag("span", attrs={"class": UNIT_CLASS})
        top = soup.new_tag("span", attrs={"class": PHONETIC_CLASS})
        top.string = phonetic or NBSP
        bottom = soup.new_tag("span", attrs={"class": CHARACTER_CLASS})
        bottom.string = character
        unit.append(top)
        unit.append(bottom)
        pair.replace_with(unit)
        stacked += 1
    return stacked


def normalize_scripture_html(markup: str) -> str:
    """Repair and restack upstream markup; returns the body contents.

    Running it on its own output returns the same string.
    """
    soup = _soup(markup)
    _drop_non_content(soup)
    repair_nested_punctuation(soup)
    stack_annotation_pairs(soup)
    return _content_root(soup).decode_contents().strip()


# ---------- plain text ----------


def extract_plain_text(markup: str) -> str:
    soup = _soup(markup)
    _drop_non_content(soup)
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()
    for pair in list(soup.find_all(PAIR_TAG)):
        spans = _pair_spans(pair)
        if spans is not None:
            pair.replace_with(spans[1].get_text())
    for unit in list(soup.find_all("span", class_=UNIT_CLASS)):
        parts = _unit_parts(unit)
        if parts is not None:
            unit.replace_with(parts[1])
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for paragraph in soup.find_all("p"):
        paragraph.insert_before("\n\n")
        paragraph.insert_after("\n\n")
    text = soup.get_text(separator="")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[^\S\n]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


# ---------- units for layout ----------


def iter_units(markup: str) -> list[list[AnnotationUnit]]:
    """Split markup into paragraphs of stacked units for the PDF renderer.

    Accepts both raw and normalized markup. Text outside annotation pairs
    becomes one unit per character with an empty phonetic component.
    """
    soup = _soup(markup)
    _drop_non_content(soup)
    paragraphs: list[list[AnnotationUnit]] = [[]]

    def _break() -> None:
        if paragraphs[-1]:
            paragraphs.append([])

    def _walk(node: Tag) -> None:
        for child in node.children:
            if isinstance(child, Comment):
                continue
            if isinstance(child, NavigableString):
                for ch in str(child):
                    if not ch.isspace():
                        paragraphs[-1].append(AnnotationUnit("", ch))
                continue
            if not isinstance(child, Tag):
                continue
            parts = _unit_parts(child)
            if parts is None:
                spans = _pair_spans(child)
                if spans is not None:
                    parts = (
                        spans[0].get_text().replace(NBSP, " ").strip(),
                        spans[1].get_text(),
                    )
            if parts is not None:
                phonetic, text = parts
                text = "".join(text.split())
                if text:
                    paragraphs[-1].append(AnnotationUnit(phonetic, text))
            elif child.name == "br":
                _break()
            elif child.name in BLOCK_LEVEL_TAGS:
                _break()
                _walk(child)
                _break()
            else:
                _walk(child)

    _walk(_content_root(soup))
    return [paragraph for paragraph in paragraphs if paragraph]


# ---------- upstream ----------


class ScriptureClient:
    """Fetches scroll pages from the upstream site, caching decoded markup."""

    def __init__(
        self,
        url_template: str = DEFAULT_SCRIPTURE_URL_TEMPLATE,
        *,
        timeout: float = 20.0,
        cache: TTLCache | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.url_template = url_template
        self.timeout = timeout
        self.cache = cache or TTLCache(3600.0, max_entries=256)
        self._session = session or requests.Session()

    def url_for(self, book_id: int, scroll: int) -> str:
        return self.url_template.format(book_id=book_id, scroll=scroll)

    def fetch_markup(self, book_id: int, scroll: int) -> tuple[str, bool]:
        """Return (decoded markup, served_from_cache)."""
        key = (book_id, scroll)
        cached = self.cache.get(key)
        if cached is not None:
            return cached, True
        url = self.url_for(book_id, scroll)
        try:
            resp = self._session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise Unavailable("经文暂时无法获取", detail=f"{url}: {exc}") from exc
        if resp.status_code != 200:
            raise Unavailable(
                "经文暂时无法获取",
                detail=f"{url} responded with status {resp.status_code}",
            )
        content_type = resp.headers.get("Content-Type", "")
        declared = resp.encoding if "charset" in content_type.lower() else None
        markup = decode_markup(resp.content, declared)
        self.cache.set(key, markup)
        logger.debug("Fetched scroll %s of book %s (%d chars)", scroll, book_id, len(markup))
        return markup, False
