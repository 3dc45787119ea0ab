"""Tests for language resolution and the message catalog."""

from types import SimpleNamespace

import pytest

from usersvc.service.i18n import EN, FR, MESSAGES, LanguageResolver, translate


@pytest.fixture
def resolver():
    return LanguageResolver(FR)


class TestResolve:
    def test_default_is_french(self, resolver):
        assert resolver.resolve() == FR

    def test_query_beats_header(self, resolver):
        assert resolver.resolve(query_lang="en", header_lang="fr") == EN

    def test_header_beats_accept_language(self, resolver):
        assert resolver.resolve(header_lang="EN", accept_language="fr-FR") == EN

    def test_accept_language_respects_quality(self, resolver):
        assert resolver.resolve(accept_language="fr;q=0.4, en-US;q=0.9") == EN

    def test_accept_language_skips_unsupported(self, resolver):
        assert resolver.resolve(accept_language="de-DE, en;q=0.5") == EN

    def test_unsupported_everywhere_falls_back(self, resolver):
        assert resolver.resolve(query_lang="es", accept_language="de, it") == FR

    def test_malformed_header_never_raises(self, resolver):
        assert resolver.resolve(accept_language=";;;q=abc,,") == FR

    def test_malformed_quality_counts_as_full_preference(self, resolver):
        assert resolver.resolve(accept_language="fr;q=0.5, en;q=abc") == EN

    def test_zero_quality_is_dropped(self, resolver):
        assert resolver.resolve(accept_language="en;q=0, de") == FR

    def test_english_default(self):
        assert LanguageResolver(EN).resolve(accept_language="de") == EN

    def test_resolve_request(self, resolver):
        request = SimpleNamespace(
            query_params={}, headers={"accept-language": "en-GB,en;q=0.8"}
        )
        assert resolver.resolve_request(request) == EN


class TestTranslate:
    def test_every_entry_has_both_languages(self):
        for key, entry in MESSAGES.items():
            assert set(entry) == {FR, EN}, key

    def test_parameters_are_filled(self):
        text = translate("rate_limit.exceeded", EN, retry_after=42)
        assert "42" in text

    def test_unknown_key_echoes_key(self):
        assert translate("nope.missing", EN) == "nope.missing"
