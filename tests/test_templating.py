"""Tests for the message template renderer."""
from models.schemas import Lead
from utils.templating import digits_only, first_name, normalize_phone, render


class TestRender:
    def test_name_is_first_token(self):
        lead = Lead(name="  Ana María López ", phone="55 1234 5678")
        assert render("Hola {{name}}!", lead) == "Hola Ana!"

    def test_phone_is_digits_only(self):
        lead = Lead(name="Ana", phone="+52 (55) 1234-5678")
        assert render("tel={{phone}}", lead) == "tel=525512345678"

    def test_other_field_and_missing_field(self):
        lead = Lead(name="Ana", phone="1", city="Puebla")
        assert render("{{city}}/{{nothing}}", lead) == "Puebla/"

    def test_whitespace_inside_braces(self):
        assert render("{{ name }}", {"name": "Luis Pérez"}) == "Luis"

    def test_list_field_joined(self):
        lead = Lead(name="Ana", tags=["a", "b"])
        assert render("{{tags}}", lead) == "a, b"

    def test_empty_template(self):
        assert render("", Lead()) == ""
        assert render(None, Lead()) == ""

    def test_no_lead(self):
        assert render("Hola {{name}}", None) == "Hola "

    def test_text_without_placeholders_unchanged(self):
        assert render("Sin marcadores {x}", Lead(name="Ana")) == "Sin marcadores {x}"

    def test_missing_name_renders_empty(self):
        assert render("Hola {{name}},", Lead(name="")) == "Hola ,"


class TestHelpers:
    def test_digits_only(self):
        assert digits_only("+1 (555) 010-9999") == "15550109999"
        assert digits_only(None) == ""

    def test_first_name(self):
        assert first_name("José Luis") == "José"
        assert first_name("   ") == ""
        assert first_name(None) == ""

    def test_normalize_mexican_mobiles(self):
        assert normalize_phone("55 1234 5678") == "5215512345678"
        assert normalize_phone("+52 55 1234 5678") == "5215512345678"
        assert normalize_phone("5215512345678") == "5215512345678"

    def test_normalize_other_numbers_keep_digits(self):
        assert normalize_phone("+1 (555) 010-9999") == "15550109999"
        assert normalize_phone("") == ""
