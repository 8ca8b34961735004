import pytest

from portier.core.i18n import normalize_language, translate
from portier.services.notifications import render_email


@pytest.mark.parametrize(
    "raw, expected",
    [("fr-FR", "fr"), ("SW_ke", "sw"), ("de", "en"), (None, "en"), ("", "en")],
)
def test_normalize_language(raw, expected):
    assert normalize_language(raw) == expected


def test_translate_with_params():
    assert translate("Please wait {seconds} seconds before requesting a new code", "fr", seconds=12).count("12") == 1
    assert translate("Invalid identifier or password", "fr") == "Identifiant ou mot de passe invalide"


def test_missing_catalog_falls_back_to_msgid():
    # Kinyarwanda is a supported language without a catalog yet.
    assert translate("Invalid identifier or password", "rw") == "Invalid identifier or password"


def test_verification_email_is_localised():
    html = render_email("email/verification_code.html", "fr", code="482913", minutes=10)

    assert "482913" in html
    assert 'lang="fr"' in html


async def test_error_follows_accept_language(client):
    response = await client.post(
        "/api/auth/login",
        json={"identifier": "ghost@example.com", "password": "whatever"},
        headers={"Accept-Language": "fr-FR,fr;q=0.9,en;q=0.8"},
    )

    assert response.status_code == 401
    assert response.json() == {"error": "Identifiant ou mot de passe invalide", "errorCode": "INVALID_CREDENTIALS"}


async def test_lang_cookie_beats_header(client):
    response = await client.post(
        "/api/auth/check-identifier",
        json={"identifier": ""},
        headers={"Accept-Language": "fr", "Cookie": "lang=sw"},
    )

    assert response.json()["error"] == "Kitambulisho kinahitajika"


async def test_body_language_sets_code_language(client, sender):
    await client.post(
        "/api/auth/check-identifier",
        json={"identifier": "hana@example.com", "language": "fr-CA"},
        headers={"Accept-Language": "sw"},
    )

    assert sender.codes[0].language == "fr"
