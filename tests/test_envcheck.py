# 📄 tests/test_envcheck.py

from __future__ import annotations

from tools.envcheck import mask, mask_db_url, validate

BASE = {
    "DB_URL_SYNC": "postgresql+psycopg2://app:pw@db:5432/stock",
    "LOG_LEVEL": "INFO",
}


def test_minimal_env_passes_with_dev_warning():
    missing, invalid, warnings = validate(dict(BASE))

    assert missing == []
    assert invalid == []
    assert any("AUTH_REQUIRED=false" in w for w in warnings)


def test_missing_required_and_secret():
    missing, _, _ = validate({"AUTH_REQUIRED": "true"})

    assert "DB_URL_SYNC" in missing
    assert "LOG_LEVEL" in missing
    assert any(m.startswith("JWT_SECRET_KEY") for m in missing)


def test_invalid_values():
    values = {
        **BASE,
        "DB_URL_SYNC": "mysql://x@y/z",
        "ALLOCATION_DEFAULT_POLICY": "lifo",
        "ALLOCATION_MAX_RETRIES": "99",
        "BUSINESS_DAY_CUTOFF_HOUR": "abc",
        "CORS_ORIGINS": "https://shop.example.com,ftp://bad",
    }

    _, invalid, _ = validate(values)

    assert len(invalid) == 5
    assert any(i.startswith("CORS_ORIGINS") and "ftp://bad" in i for i in invalid)


def test_policy_check_is_case_insensitive():
    _, invalid, _ = validate({**BASE, "ALLOCATION_DEFAULT_POLICY": "PRIORITY"})
    assert invalid == []


def test_masking():
    assert mask_db_url(BASE["DB_URL_SYNC"]) == "postgresql+psycopg2://***@db:5432/stock"
    assert mask("abcdefgh") == "ab****gh"
    assert mask("abc") == "***"
