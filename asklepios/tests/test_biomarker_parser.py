from asklepios.services.biomarker_parser import parse, parse_line, serialize


def test_parses_name_value_unit_and_reference():
    result = parse("Name: 12.3 unit (референс: 1-20)")
    assert result.skipped_lines == 0
    assert len(result.fields) == 1
    field = result.fields[0]
    assert field.name == "Name"
    assert field.value == "12.3"
    assert field.unit == "unit"
    assert field.reference_range == "1-20"


def test_russian_report_lines_get_status_and_category():
    text = "Гемоглобин: 135 г/л (референс: 120-160)\nЛейкоциты: 11,2 ×10⁹/л"
    fields = parse(text).fields
    assert [f.name for f in fields] == ["Гемоглобин", "Лейкоциты"]
    assert fields[0].status == "normal"
    assert fields[0].category == "blood"
    assert fields[1].value == "11,2"
    assert fields[1].status == "high"
    assert fields[1].category == "immunity"


def test_non_matching_lines_are_skipped_and_counted():
    text = "\n".join([
        "ОБЩИЙ АНАЛИЗ КРОВИ",
        "Комментарий: нет",
        "",
        "Глюкоза: 5.1 ммоль/л",
        "   ",
    ])
    result = parse(text)
    assert [f.name for f in result.fields] == ["Глюкоза"]
    assert result.skipped_lines == 2


def test_empty_and_none_input():
    assert parse("").fields == []
    assert parse(None).skipped_lines == 0


def test_trailing_separator_is_trimmed_from_value():
    field = parse_line("Тромбоциты: 181. ×10⁹/л")
    assert field is not None
    assert field.value == "181"


def test_line_without_unit():
    field = parse_line("Креатинин: 80")
    assert field.unit == ""
    assert field.status == "normal"


def test_qualifier_before_value_is_tolerated():
    crp = parse_line("СРБ: <5 мг/л")
    assert crp is not None
    assert crp.name == "СРБ"
    assert crp.value == "5"
    assert crp.unit == "мг/л"

    hb = parse_line("Hb: ~135")
    assert hb.value == "135"
    assert parse_line("Ферритин: менее 10 нг/мл").value == "10"
    assert parse_line("Комментарий: нет") is None


def test_each_field_gets_a_fresh_id():
    a = parse("Глюкоза: 5.1").fields[0]
    b = parse("Глюкоза: 5.1").fields[0]
    assert a.id != b.id


def test_serialize_round_trip_is_stable():
    text = "\n".join([
        "Гемоглобин: 135 г/л (референс: 120-160)",
        "Глюкоза: 5,4 ммоль/л",
        "мусор без двоеточия",
        "Креатинин: 80",
    ])
    first = parse(text)
    second = parse(serialize(first.fields))

    def triples(result):
        return {(f.name, f.value, f.unit) for f in result.fields}

    assert triples(second) == triples(first)
    assert second.skipped_lines == 0


def test_serialize_format():
    fields = parse("Глюкоза: 7.5 ммоль/л\nКреатинин: 80").fields
    assert serialize(fields) == "Глюкоза: 7.5 ммоль/л\nКреатинин: 80"
