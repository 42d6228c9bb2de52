"""
Tests for the KRS extract analyzer, using small hand-built extracts.
"""

import math

import pytest

from krs_analyzer import (
    SECTION_LABELS,
    analyze_odpis,
    any_node,
    capital_change,
    company_name,
    find_nodes,
    format_pln,
    iter_nodes,
    latest_entry_number,
    parse_pl_number,
    section_label,
    touched_sections,
)


def make_odpis(entries=None, dane=None):
    odpis = {"naglowekP": {"numerKRS": "0000028098"}, "dane": dane or {}}
    if entries is not None:
        odpis["naglowekP"]["wpis"] = entries
    return {"odpis": odpis}


CAPITAL_HISTORY = [
    {"nrWpisuWprow": 5, "wartosc": "1000"},
    {"nrWpisuWprow": 7, "wartosc": "2000"},
    {"nrWpisuWprow": 9, "wartosc": "3000"},
]

# ========================
# Numbers
# ========================

def test_parse_pl_number_handles_spaces_and_decimal_comma():
    assert parse_pl_number("1 234,50") == 1234.5
    assert parse_pl_number("5.000.000,00") == 5000000.0
    assert parse_pl_number(42) == 42.0


@pytest.mark.parametrize("text", ["abc", "", None, "1,2,3", "1_000", "1e3", "inf", "nan"])
def test_parse_pl_number_returns_nan_instead_of_raising(text):
    assert math.isnan(parse_pl_number(text))


def test_format_pln():
    assert format_pln("1 234,50") == "1\u00a0234,50\u00a0zł"
    assert format_pln(5000000) == "5\u00a0000\u00a0000,00\u00a0zł"


def test_format_pln_returns_input_unchanged_when_unparseable():
    assert format_pln("n/a") == "n/a"
    assert format_pln(None) is None

# ========================
# Scanner
# ========================

def test_iter_nodes_reaches_every_mapping_and_skips_scalars():
    tree = {"a": [{"b": 1}, None, [{"c": {"d": 2}}]], "e": "x"}
    nodes = list(iter_nodes(tree))
    assert len(nodes) == 4
    assert {"d": 2} in nodes


def test_find_nodes_and_any_node():
    tree = [{"k": 1}, {"k": 2, "sub": {"k": 1}}, "junk", None]
    assert len(find_nodes(tree, lambda n: n.get("k") == 1)) == 2
    assert any_node(tree, lambda n: n.get("k") == 2)
    assert not any_node(tree, lambda n: n.get("k") == 3)
    assert not any_node(None, lambda n: True)

# ========================
# Latest entry
# ========================

def test_latest_entry_is_maximum_not_last_element():
    entries = [{"numerWpisu": 3}, {"numerWpisu": 7}, {"numerWpisu": 5}]
    assert latest_entry_number(entries) == 7


def test_latest_entry_accepts_numeric_strings():
    assert latest_entry_number([{"numerWpisu": "12"}, {"numerWpisu": "9"}]) == 12


def test_latest_entry_malformed_entries_count_as_zero():
    assert latest_entry_number([{"numerWpisu": "x"}, {}, "junk"]) == 0
    assert latest_entry_number([{"numerWpisu": "x"}, {"numerWpisu": 2}]) == 2


@pytest.mark.parametrize("entries", [None, [], "wpis"])
def test_latest_entry_missing_or_empty_is_none(entries):
    assert latest_entry_number(entries) is None

# ========================
# Sections
# ========================

def test_section_label_maps_both_spellings():
    assert section_label("dzial3") == SECTION_LABELS[3]
    assert section_label("dzialIII") == SECTION_LABELS[3]
    assert section_label("dzialX") == "dzialX"


@pytest.mark.parametrize("key", ["dzial3", "dzialIII"])
def test_only_the_tagged_section_is_reported(key):
    dane = {
        "dzial1": {"danePodmiotu": {"nazwa": [{"nazwa": "ACME", "nrWpisuWprow": "1"}]}},
        key: {"pkd": [{"opis": "x", "nrWpisuWprow": "7"}]},
    }
    assert touched_sections(dane, 7) == [SECTION_LABELS[3]]


def test_sections_match_alternate_tag_spelling_and_string_tags():
    dane = {"dzial2": {"organ": {"deep": [{"nrWpisuaWprow": "7"}]}}}
    assert touched_sections(dane, "7") == [SECTION_LABELS[2]]


def test_sections_keep_data_key_order():
    dane = {
        "dzial6": {"x": {"nrWpisuWprow": 4}},
        "dzial1": {"y": {"nrWpisuWprow": 4}},
    }
    assert touched_sections(dane, 4) == [SECTION_LABELS[6], SECTION_LABELS[1]]


def test_sections_deduplicated_across_spellings():
    dane = {
        "dzial2": {"x": {"nrWpisuWprow": 4}},
        "dzialII": {"y": {"nrWpisuWprow": 4}},
    }
    assert touched_sections(dane, 4) == [SECTION_LABELS[2]]


def test_sections_ignore_non_section_keys_and_bad_input():
    assert touched_sections({"kapital": {"nrWpisuWprow": 4}}, 4) == []
    assert touched_sections(None, 4) == []
    assert touched_sections({"dzial1": None}, 4) == []

# ========================
# Capital
# ========================

def test_capital_previous_is_nearest_lower_tag():
    dane = {"dzial1": {"kapital": {"wysokoscKapitaluZakladowego": CAPITAL_HISTORY}}}
    assert capital_change(dane, 7) == {"nowa": "2000", "poprzednia": "1000"}


def test_capital_first_value_has_no_previous():
    dane = {"dzial1": {"kapital": {"wysokoscKapitaluZakladowego": CAPITAL_HISTORY}}}
    assert capital_change(dane, 5) == {"nowa": "1000", "poprzednia": None}


def test_capital_untouched_by_entry_is_none():
    dane = {"dzial1": {"kapital": {"wysokoscKapitaluZakladowego": CAPITAL_HISTORY}}}
    assert capital_change(dane, 99) is None


def test_capital_found_under_alternate_paths():
    history = [{"nrWpisuaWprow": "2", "wartosc": "10"}, {"nrWpisuWprow": "3", "wartosc": "20"}]
    assert capital_change({"kapital": {"wysokoscKapitaluZakladowego": history}}, 3) == {
        "nowa": "20", "poprzednia": "10"}
    assert capital_change({"dzialI": {"kapital": {"wysokoscKapitaluZakladowego": history}}}, "3") == {
        "nowa": "20", "poprzednia": "10"}


def test_capital_skips_empty_candidate_path():
    dane = {
        "dzial1": {"kapital": {"wysokoscKapitaluZakladowego": []}},
        "kapital": {"wysokoscKapitaluZakladowego": CAPITAL_HISTORY},
    }
    assert capital_change(dane, 9) == {"nowa": "3000", "poprzednia": "2000"}


def test_capital_missing_is_none():
    assert capital_change({}, 1) is None
    assert capital_change(None, 1) is None


def test_capital_float_tags_match_integer_entries():
    history = [{"nrWpisuWprow": 5.0, "wartosc": "1000"}, {"nrWpisuWprow": 7.0, "wartosc": "2000"}]
    dane = {"dzial1": {"kapital": {"wysokoscKapitaluZakladowego": history}}}
    assert capital_change(dane, 7) == {"nowa": "2000", "poprzednia": "1000"}
    assert touched_sections(dane, 7) == [SECTION_LABELS[1]]

# ========================
# Company name
# ========================

def test_name_from_direct_path():
    payload = make_odpis([{"numerWpisu": 1}], {"dzial1": {"danePodmiotu": {"nazwa": "  ACME  "}}})
    assert company_name(payload) == "ACME"


def test_name_from_alternate_direct_path():
    payload = make_odpis([{"numerWpisu": 1}], {"dzialI": {"podstawoweDane": {"firma": "ACME SA"}}})
    assert company_name(payload) == "ACME SA"


def test_name_prefers_highest_tagged_history_value():
    dane = {"dzial1": {"danePodmiotu": {"nazwa": [
        {"nazwa": "OLD NAME SPÓŁKA Z OGRANICZONĄ ODPOWIEDZIALNOŚCIĄ", "nrWpisuWprow": "1", "nrWpisuWykr": "4"},
        {"nazwa": "INC SPÓŁKA AKCYJNA", "nrWpisuWprow": "4"},
    ]}}}
    assert company_name(make_odpis([{"numerWpisu": 4}], dane)) == "INC SPÓŁKA AKCYJNA"


def test_name_tagged_beats_longer_untagged():
    dane = {"dzial6": {"nazwa": "A MUCH LONGER UNTAGGED NAME"}, "dzial1": {"x": {"firma": "TAG", "nrWpisuWprow": 2}}}
    assert company_name(make_odpis([{"numerWpisu": 2}], dane)) == "TAG"


def test_name_falls_back_to_longest_untagged():
    dane = {"dzial1": {"a": {"nazwa": "ACME"}, "b": {"nazwaSkrocona": "ACME HOLDING"}}}
    assert company_name(make_odpis([{"numerWpisu": 1}], dane)) == "ACME HOLDING"


def test_name_checks_fields_in_priority_order_per_node():
    dane = {"dzial1": {"a": {"nazwa": "SHORT", "firma": "FIRMA", "nrWpisuWprow": 1}}}
    assert company_name(make_odpis([{"numerWpisu": 1}], dane)) == "FIRMA"


def test_name_tie_on_tag_goes_to_later_node():
    dane = {"dzial1": {
        "a": {"nazwa": "FIRST", "nrWpisuWprow": 3},
        "b": {"nazwa": "SECOND", "nrWpisuWprow": "3"},
    }}
    assert company_name(make_odpis([{"numerWpisu": 3}], dane)) == "SECOND"


def test_name_direct_path_wins_over_higher_tagged_candidates():
    dane = {
        "dzial1": {"danePodmiotu": {"nazwa": "ACME"}},
        "dzial2": {"x": {"firma": "SOMETHING ELSE ENTIRELY", "nrWpisuWprow": 9}},
    }
    assert company_name(make_odpis([{"numerWpisu": 9}], dane)) == "ACME"


def test_name_absent_is_empty_string():
    assert company_name(make_odpis([{"numerWpisu": 1}], {})) == ""
    assert company_name(None) == ""

# ========================
# Whole record
# ========================

def test_analyze_full_record():
    dane = {
        "dzial1": {
            "danePodmiotu": {"nazwa": [{"nazwa": "ACME SPÓŁKA AKCYJNA", "nrWpisuWprow": "1"}]},
            "kapital": {"wysokoscKapitaluZakladowego": CAPITAL_HISTORY},
        },
        "dzial2": {"reprezentacja": {"nazwaOrganu": [{"nazwaOrganu": "ZARZĄD", "nrWpisuWprow": "3"}]}},
    }
    result = analyze_odpis(make_odpis([{"numerWpisu": 5}, {"numerWpisu": 7}, {"numerWpisu": 6}], dane))
    assert result == {
        "ok": True,
        "error": None,
        "last": 7,
        "dzialy": [SECTION_LABELS[1]],
        "kapital": {"poprzednia": "1000", "nowa": "2000"},
        "name": "ACME SPÓŁKA AKCYJNA",
    }


def test_analyze_without_entries_fails():
    result = analyze_odpis(make_odpis(entries=None))
    assert result["ok"] is False
    assert result["error"]
    assert result["last"] is None


def test_analyze_with_empty_entries_fails():
    assert analyze_odpis(make_odpis(entries=[]))["ok"] is False


@pytest.mark.parametrize("payload", [None, {}, {"odpis": "x"}, []])
def test_analyze_without_odpis_fails(payload):
    result = analyze_odpis(payload)
    assert result["ok"] is False
    assert result["last"] is None


def test_analyze_degrades_missing_parts_to_empty_values():
    result = analyze_odpis(make_odpis([{"numerWpisu": "x"}]))
    assert result["ok"] is True
    assert result["last"] == 0
    assert result["dzialy"] == []
    assert result["kapital"] is None
    assert result["name"] == ""


def test_analyze_last_override():
    dane = {"dzial1": {"kapital": {"wysokoscKapitaluZakladowego": CAPITAL_HISTORY}}}
    result = analyze_odpis(make_odpis([{"numerWpisu": 9}], dane), last=5)
    assert result["last"] == 5
    assert result["kapital"] == {"nowa": "1000", "poprzednia": None}
