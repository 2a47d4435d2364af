"""
CSV input/output tests.
"""

from csv_io import (
    RESULT_COLUMNS,
    detect_delimiter,
    generate_csv,
    guess_url_column,
    parse_csv,
)
from row_store import AnalysisResult, AnalysisStatus


SEMICOLON_FILE = (
    "Nome;Sito Web Trovato;Città\n"
    "Acme Srl;https://acme.it;Milano\n"
    "\n"
    "Beta SpA;https://beta.com;Roma\n"
)


def _finish(store, index, result):
    store.mark_processing([index])
    store.write_result(index, result)


def test_detect_delimiter():
    assert detect_delimiter("Nome;Sito") == ";"
    assert detect_delimiter("Nome,Sito") == ","
    assert detect_delimiter("Nome") == ","


def test_parse_semicolon_file():
    store = parse_csv(SEMICOLON_FILE)
    assert store.headers == ["Nome", "Sito Web Trovato", "Città"]
    assert len(store) == 2
    assert [item.id for item in store.items] == ["0", "1"]
    assert all(item.status == AnalysisStatus.IDLE for item in store.items)
    assert store[1].values == {"Nome": "Beta SpA", "Sito Web Trovato": "https://beta.com", "Città": "Roma"}


def test_parse_comma_file_with_quotes_and_bom():
    raw = '\ufeff"Company","Website"\r\n"Acme","https://acme.com"\r\nGlobex, https://globex.com \r\n'.encode("utf-8")
    store = parse_csv(raw)
    assert store.headers == ["Company", "Website"]
    assert store[0].values == {"Company": "Acme", "Website": "https://acme.com"}
    assert store[1].values == {"Company": "Globex", "Website": "https://globex.com"}


def test_missing_trailing_fields_default_to_empty():
    store = parse_csv("Nome;Sito;Note\nAcme;https://acme.it\n")
    assert store[0].values == {"Nome": "Acme", "Sito": "https://acme.it", "Note": ""}


def test_header_only_or_empty_input_gives_empty_store():
    assert len(parse_csv("")) == 0
    assert len(parse_csv("Nome;Sito\n\n")) == 0


def test_round_trip_appends_result_columns_in_order():
    store = parse_csv(SEMICOLON_FILE)
    _finish(store, 0, AnalysisResult(
        url="https://acme.it",
        type="E-commerce",
        details="Sells leather bags",
        sources=("https://a.com", "https://b.com"),
    ))

    lines = generate_csv(store).splitlines()
    assert lines[0] == "Nome;Sito Web Trovato;Città;Tipologia di Sito;Dettagli;Fonti"
    assert lines[1] == "Acme Srl;https://acme.it;Milano;E-commerce;Sells leather bags;https://a.com, https://b.com"
    assert lines[2] == "Beta SpA;https://beta.com;Roma;;;"
    assert len(lines) == 3


def test_fields_with_semicolons_or_quotes_are_quoted():
    store = parse_csv("Nome;Sito\nAcme;https://acme.it\n")
    _finish(store, 0, AnalysisResult(url="https://acme.it", type="Blog", details='Says "hi"; daily'))

    lines = generate_csv(store).splitlines()
    assert lines[1] == 'Acme;https://acme.it;Blog;"Says ""hi""; daily";'


def test_reexport_does_not_duplicate_result_columns():
    first = parse_csv("Nome;Sito\nAcme;https://acme.it\n")
    _finish(first, 0, AnalysisResult(url="https://acme.it", type="Corporate", details="Consulting"))
    exported = generate_csv(first)

    reloaded = parse_csv(exported)
    assert reloaded.headers == ["Nome", "Sito"] + RESULT_COLUMNS
    header = generate_csv(reloaded).splitlines()[0]
    assert header.split(";") == ["Nome", "Sito"] + RESULT_COLUMNS


def test_empty_store_exports_nothing():
    assert generate_csv(parse_csv("")) == ""


def test_guess_url_column():
    assert guess_url_column(["Nome", "Sito Web Trovato", "Sito"]) == "Sito Web Trovato"
    assert guess_url_column(["Nome", "Indirizzo Sito"]) == "Indirizzo Sito"
    assert guess_url_column(["Company", "Website"]) == "Website"
    assert guess_url_column(["Company", "Profile Link"]) == "Profile Link"
    assert guess_url_column(["Company", "Homepage URL"]) == "Homepage URL"
    assert guess_url_column(["Alpha", "Beta"]) == "Alpha"
    assert guess_url_column([]) is None


def test_unbalanced_quote_falls_back_to_line_split():
    store = parse_csv('Nome;Sito\n"Acme;https://acme.it\nBeta;https://beta.com\nGamma;https://gamma.com\n')
    assert store.headers == ["Nome", "Sito"]
    assert len(store) == 3
    assert store[0].values == {"Nome": "Acme", "Sito": "https://acme.it"}
    assert store[1].values == {"Nome": "Beta", "Sito": "https://beta.com"}
    assert store[2].values == {"Nome": "Gamma", "Sito": "https://gamma.com"}


def test_multiline_details_are_quoted_on_export():
    store = parse_csv("Nome;Sito\nAcme;https://acme.it\n")
    _finish(store, 0, AnalysisResult(url="https://acme.it", type="Blog", details="line1\nline2"))
    assert 'Acme;https://acme.it;Blog;"line1\nline2";' in generate_csv(store)
