#!/usr/bin/env python3
"""
KRS extract analyzer

Takes a full KRS extract (the JSON returned by the OdpisPelny endpoint) and works out:
- the latest filing entry number (numerWpisu)
- which sections (działy) that entry touched
- the registered capital before/after that entry, if the entry changed it
- the current company name

Everything here is pure: dicts and lists in, dicts out. No network, no files,
no printing. Malformed substructure narrows the result instead of raising.
"""

import math
import re

# ========================
# Section (dział) labels
# ========================

SECTION_LABELS = {
    1: "Dział I – Dane podmiotu i kapitał",
    2: "Dział II – Organy i reprezentacja",
    3: "Dział III – PKD, sprawozdania, wzmianki",
    4: "Dział IV – Postępowania, upadłości",
    5: "Dział V – Połączenia, podziały, przekształcenia",
    6: "Dział VI – Wzmianki różne",
}

# Both spellings seen in the registry JSON, lowercased
SECTION_SPELLINGS = {
    "dzial1": 1, "dzial2": 2, "dzial3": 3, "dzial4": 4, "dzial5": 5, "dzial6": 6,
    "dziali": 1, "dzialii": 2, "dzialiii": 3, "dzialiv": 4, "dzialv": 5, "dzialvi": 6,
}

SECTION_KEY_RE = re.compile(r"^dzial", re.I)
NUMBER_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")

# pl-PL currency uses a no-break space for grouping and before the symbol
NBSP = "\u00a0"

ENTRY_TAG_FIELDS = ("nrWpisuWprow", "nrWpisuaWprow")
NAME_FIELDS = ("firma", "nazwa", "nazwaSkrocona")

CAPITAL_PATHS = (
    ("dzial1", "kapital", "wysokoscKapitaluZakladowego"),
    ("kapital", "wysokoscKapitaluZakladowego"),
    ("dzialI", "kapital", "wysokoscKapitaluZakladowego"),
)

NAME_PATHS = [
    (section, group, field)
    for section in ("dzial1", "dzialI")
    for group in ("danePodmiotu", "podstawoweDane")
    for field in ("nazwa", "firma")
]

# ========================
# Numbers & currency
# ========================

def parse_pl_number(text) -> float:
    """'1 234,50' -> 1234.5. Returns nan (never raises) when it isn't a number."""
    if text is None:
        return math.nan
    s = str(text).replace(" ", "").replace(".", "").replace(",", ".", 1)
    if not NUMBER_RE.fullmatch(s):
        return math.nan
    return float(s)


def format_pln(value):
    """Render a value as Polish złoty, e.g. '1 234,50 zł'. Unparseable input comes back as-is."""
    try:
        n = value if isinstance(value, (int, float)) and not isinstance(value, bool) else parse_pl_number(value)
        if not math.isfinite(n):
            return value
        grouped = f"{n:,.2f}".replace(",", NBSP).replace(".", ",")
        return f"{grouped}{NBSP}zł"
    except (TypeError, ValueError):
        return value

# ========================
# Tree scanning
# ========================

def iter_nodes(tree):
    """Yield every mapping node under tree (tree included), depth-first.

    Lists are expanded, never yielded. Scalars and None are skipped.
    """
    stack = [tree]
    while stack:
        cur = stack.pop()
        if isinstance(cur, list):
            stack.extend(reversed(cur))
        elif isinstance(cur, dict):
            yield cur
            stack.extend(reversed(list(cur.values())))


def find_nodes(tree, predicate) -> list:
    return [node for node in iter_nodes(tree) if predicate(node)]


def any_node(tree, predicate) -> bool:
    return any(predicate(node) for node in iter_nodes(tree))


def _tag_str(value) -> str:
    # 5.0 and 5 are the same entry
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def entry_tag(node: dict):
    """The entry-number tag on a node as a string, or None. Either spelling counts."""
    for field in ENTRY_TAG_FIELDS:
        value = node.get(field)
        if value is not None:
            return _tag_str(value)
    return None


def _tag_number(node: dict):
    tag = entry_tag(node)
    if tag is None:
        return None
    try:
        return int(tag)
    except ValueError:
        return None


def _tagged_with(node: dict, target: str) -> bool:
    # a node may carry both spellings
    return any(
        node.get(field) is not None and _tag_str(node.get(field)) == target
        for field in ENTRY_TAG_FIELDS
    )


def _dig(tree, path):
    cur = tree
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur

# ========================
# Latest entry
# ========================

def _entry_number(entry) -> int:
    if not isinstance(entry, dict):
        return 0
    try:
        return int(str(entry.get("numerWpisu")).strip())
    except ValueError:
        return 0


def latest_entry_number(entries):
    """Highest numerWpisu in the header entries, regardless of list order.

    Returns None when there are no entries at all. Entries without a usable
    number count as 0, so a list of junk yields 0 rather than None.
    """
    if not isinstance(entries, list) or not entries:
        return None
    return max(_entry_number(e) for e in entries)

# ========================
# Sections touched by an entry
# ========================

def section_label(key: str) -> str:
    number = SECTION_SPELLINGS.get(key.lower())
    return SECTION_LABELS[number] if number else key


def touched_sections(dane, last) -> list:
    """Labels of the sections containing any node tagged with entry `last`, in key order."""
    out = []
    if not isinstance(dane, dict):
        return out
    target = _tag_str(last)
    for key, section in dane.items():
        if not isinstance(key, str) or not SECTION_KEY_RE.match(key):
            continue
        if any_node(section, lambda node: _tagged_with(node, target)):
            label = section_label(key)
            if label not in out:
                out.append(label)
    return out

# ========================
# Registered capital
# ========================

def capital_history(dane):
    """First non-empty capital history list found under the known paths, else None."""
    for path in CAPITAL_PATHS:
        history = _dig(dane, path)
        if isinstance(history, list) and history:
            return history
    return None


def capital_change(dane, last):
    """
    {"poprzednia": ..., "nowa": ...} for the capital value set by entry `last`.

    "nowa" comes from the history record tagged with `last`; "poprzednia" from
    the record with the highest tag below `last` (None if `last` set the first
    value). Returns None when there's no history or `last` didn't touch it.
    """
    history = capital_history(dane)
    if not history:
        return None

    target = _tag_str(last)
    records = [r for r in history if isinstance(r, dict)]
    current = next((r for r in records if _tagged_with(r, target)), None)
    if current is None:
        return None

    try:
        last_number = int(target)
    except ValueError:
        last_number = None

    previous, previous_tag = None, None
    if last_number is not None:
        for record in records:
            tag = _tag_number(record)
            if tag is None or tag >= last_number:
                continue
            if previous_tag is None or tag > previous_tag:
                previous, previous_tag = record, tag

    return {
        "poprzednia": previous.get("wartosc") if previous else None,
        "nowa": current.get("wartosc"),
    }

# ========================
# Company name
# ========================

def _direct_name(dane):
    for path in NAME_PATHS:
        value = _dig(dane, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _node_name(node: dict):
    for field in NAME_FIELDS:
        value = node.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def company_name(payload) -> str:
    """
    Best available company name, "" if nothing usable.

    Direct paths first (dzial1/dzialI -> danePodmiotu/podstawoweDane -> nazwa/firma,
    string values only). Otherwise scan the whole record: a name on a node with
    the highest entry tag wins (later nodes win ties), and failing any tagged
    name, the longest untagged one.
    """
    direct = _direct_name(_dig(payload, ("odpis", "dane")))
    if direct:
        return direct

    best_tagged, best_tag = None, None
    longest = None
    for node in iter_nodes(payload):
        name = _node_name(node)
        if name is None:
            continue
        tag = _tag_number(node)
        if tag is not None:
            if best_tag is None or tag >= best_tag:
                best_tagged, best_tag = name, tag
        elif longest is None or len(name) > len(longest):
            longest = name

    return best_tagged or longest or ""

# ========================
# Whole-record analysis
# ========================

def analyze_odpis(payload, last=None) -> dict:
    """
    Analyze one KRS extract.

    Returns {"ok", "error", "last", "dzialy", "kapital", "name"}. Only a missing
    odpis / header entries list gives ok=False; everything else degrades to
    empty values. `last` overrides the latest entry number read from the header.
    """
    odpis = payload.get("odpis") if isinstance(payload, dict) else None
    if not isinstance(odpis, dict):
        return {"ok": False, "error": "missing 'odpis' field", "last": None}

    entries = _dig(odpis, ("naglowekP", "wpis"))
    latest = latest_entry_number(entries)
    if latest is None:
        return {"ok": False, "error": "missing or empty 'odpis.naglowekP.wpis'", "last": None}
    if last is not None:
        latest = last

    dane = odpis.get("dane")
    return {
        "ok": True,
        "error": None,
        "last": latest,
        "dzialy": touched_sections(dane, latest),
        "kapital": capital_change(dane, latest),
        "name": company_name(payload),
    }
