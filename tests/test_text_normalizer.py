import pytest

from campaign_sync.services.text_normalizer import normalize_handle, normalize_text


class TestNormalizeText:
    def test_trims_and_casefolds(self):
        assert normalize_text("  Hello World  ") == "hello world"

    def test_collapses_unicode_whitespace(self):
        assert normalize_text("promo \t code\n2024") == "promo code 2024"

    def test_composed_and_decomposed_accents_match(self):
        assert normalize_text("Café") == normalize_text("Café")

    def test_full_width_forms_fold(self):
        assert normalize_text("ＰＲＯＭＯ") == "promo"

    def test_none_is_empty(self):
        assert normalize_text(None) == ""

    def test_without_casefold_keeps_case(self):
        assert normalize_text("  Chat  With  Anna ", casefold=False) == "Chat With Anna"

    @pytest.mark.parametrize(
        "value",
        ["Straße", "ǅemal", " İstanbul ", "ﬁne", "Café  LINE", "", "ΣΊΣΥΦΟΣ"],
    )
    def test_idempotent(self, value):
        once = normalize_text(value)
        assert normalize_text(once) == once


class TestNormalizeHandle:
    def test_strips_at_sign_and_case(self):
        assert normalize_handle(" @Kolachnyk.V ") == "kolachnyk.v"

    def test_empty_handle(self):
        assert normalize_handle(None) == ""
        assert normalize_handle("@") == ""
