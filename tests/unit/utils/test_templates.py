from wacore.utils.templates import extract_variables, render_template, validate_variables


def test_extract_variables_distinct_in_order():
    assert extract_variables("Hi {{name}}, order {{order}} for {{name}}") == ["name", "order"]
    assert extract_variables("no placeholders") == []


def test_validate_reports_missing():
    result = validate_variables("Hi {{name}}, code {{code}}", {"name": "Ana"})
    assert not result.is_valid
    assert result.missing_variables == ["code"]

    assert validate_variables("Hi {{name}}", {"name": "Ana"}).is_valid


def test_render_substitutes_case_insensitively():
    assert render_template("Hi {{Name}}!", {"name": "Ana"}) == "Hi Ana!"


def test_render_leaves_unknown_placeholders():
    assert render_template("{{a}} and {{b}}", {"a": "1"}) == "1 and {{b}}"


def test_render_value_with_backslashes_is_literal():
    assert render_template("path {{p}}", {"p": r"C:\new"}) == r"path C:\new"
