import io
import json

import pandas as pd
import pytest

from lims_import.core.exceptions import FormatError
from lims_import.domain.imports.ingestor import detect_file_type, parse_file
from lims_import.domain.imports.processors.common import dedupe_headers
from lims_import.domain.imports.processors.csv_processor import decode_text, detect_separator


def test_semicolon_csv_keeps_headers_in_order(csv_bytes):
    content = csv_bytes([
        ["Klient", "NIP", "Kod próbki"],
        ["Galwanizernia Sp. z o.o.", "5213000001", "S-1"],
        ["Chromex", "5213000002", "S-2"],
        ["Nikiel-Pol", "5213000003", "S-3"],
    ])

    parsed = parse_file(content, "export.csv")

    assert parsed.total_rows == 3
    assert parsed.headers == ["Klient", "NIP", "Kod próbki"]
    assert parsed.detected_separator == ";"
    assert parsed.detected_encoding == "utf-8"
    assert parsed.rows[1] == {"Klient": "Chromex", "NIP": "5213000002", "Kod próbki": "S-2"}


def test_windows_1250_file_is_decoded(csv_bytes):
    content = csv_bytes([["Klient", "Miasto"], ["Żółw", "Łódź"]], encoding="cp1250")

    parsed = parse_file(content, "legacy.csv")

    assert parsed.detected_encoding == "windows-1250"
    assert parsed.rows[0] == {"Klient": "Żółw", "Miasto": "Łódź"}


def test_utf8_bom_is_stripped():
    text, encoding = decode_text("\ufeffKlient;NIP\nA;1\n".encode("utf-8"))

    assert encoding == "utf-8"
    assert text.startswith("Klient")


def test_separator_detection_prefers_consistent_split():
    text = "a,b,c\n1,2,3\n4,5,6\n"
    assert detect_separator(text) == ","

    text = "name;value\n\"1,5\";2\n\"2,5\";3\n"
    assert detect_separator(text) == ";"

    text = "a\tb\n1\t2\n"
    assert detect_separator(text) == "\t"


def test_ragged_rows_are_padded_and_truncated():
    content = b"A;B;C\n1;2\n1;2;3;4\n\n;;\n5;6;7\n"

    parsed = parse_file(content, "ragged.csv")

    assert parsed.total_rows == 3
    assert parsed.rows[0] == {"A": "1", "B": "2", "C": ""}
    assert parsed.rows[1] == {"A": "1", "B": "2", "C": "3"}


def test_blank_and_repeated_headers_are_deduplicated():
    assert dedupe_headers(["Name", "", "Name", "Name"]) == ["Name", "column_2", "Name_2", "Name_3"]


def test_excel_first_sheet_is_read():
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        pd.DataFrame({"Klient": ["Chromex", "Nikiel-Pol"], "Wynik": [12.5, 3]}).to_excel(
            writer, sheet_name="Wyniki", index=False
        )
        pd.DataFrame({"Other": ["x"]}).to_excel(writer, sheet_name="Inne", index=False)

    parsed = parse_file(buffer.getvalue(), "wyniki.xlsx")

    assert parsed.headers == ["Klient", "Wynik"]
    assert parsed.total_rows == 2
    assert parsed.rows[0]["Klient"] == "Chromex"
    assert parsed.rows[0]["Wynik"] == "12.5"
    assert parsed.detected_separator is None


def test_json_records_are_flattened_and_unioned():
    payload = {
        "data": [
            {"client": {"name": "Chromex", "nip": "5213000002"}, "code": "S-1"},
            {"client": {"name": "Nikiel-Pol"}, "code": "S-2", "notes": "archiwum"},
        ]
    }

    parsed = parse_file(json.dumps(payload).encode("utf-8"), "export.json")

    assert parsed.headers == ["client.name", "client.nip", "code", "notes"]
    assert parsed.rows[1] == {"client.name": "Nikiel-Pol", "client.nip": "", "code": "S-2", "notes": "archiwum"}


def test_xml_wrapper_children_become_rows():
    content = b"""<?xml version="1.0" encoding="UTF-8"?>
<export>
  <samples>
    <sample code="S-1"><client><name>Chromex</name></client><value>12,5</value></sample>
    <sample code="S-2"><client><name>Nikiel-Pol</name></client><value>3</value></sample>
  </samples>
</export>"""

    parsed = parse_file(content, "export.xml")

    assert parsed.total_rows == 2
    assert parsed.rows[0] == {"code": "S-1", "client.name": "Chromex", "value": "12,5"}


def test_xml_single_nested_record_stays_one_row():
    content = b"""<export>
  <record>
    <client><name>Chromex</name></client>
    <sample><code>S-1</code></sample>
  </record>
</export>"""

    parsed = parse_file(content, "single.xml")

    assert parsed.total_rows == 1
    assert parsed.headers == ["client.name", "sample.code"]
    assert parsed.rows == [{"client.name": "Chromex", "sample.code": "S-1"}]


def test_preview_is_limited():
    content = ("Kod\n" + "\n".join(f"S-{i}" for i in range(25)) + "\n").encode()

    parsed = parse_file(content, "many.csv")

    assert len(parsed.preview()) == 10
    assert len(parsed.preview(3)) == 3


@pytest.mark.parametrize(
    "content, file_name, message",
    [
        (b"a;b\n1;2\n", "data.pdf", "Unsupported file type"),
        (b"", "empty.csv", "empty"),
        (b"   \n\n", "blank.csv", "empty"),
        (b"a;b\x00\x01\x02", "binary.csv", "binary"),
        (b"Klient;NIP\n", "headers_only.csv", "no data rows"),
        (b"{not json", "broken.json", "Malformed JSON"),
        (b"<root><a>", "broken.xml", "Malformed XML"),
        (b"not a workbook", "broken.xlsx", "Workbook could not be read"),
    ],
)
def test_unreadable_files_raise_format_error(content, file_name, message):
    with pytest.raises(FormatError) as exc_info:
        parse_file(content, file_name)

    assert message in exc_info.value.message
    assert exc_info.value.file_name == file_name


def test_detect_file_type_by_extension():
    assert detect_file_type("A.CSV") == "delimited"
    assert detect_file_type("a.tsv") == "delimited"
    assert detect_file_type("a.xls") == "excel"
    assert detect_file_type("a.json") == "json"
    assert detect_file_type("a.xml") == "xml"
