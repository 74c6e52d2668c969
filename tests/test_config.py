"""Unit tests for Settings validation."""
import pytest
from pydantic import ValidationError

from app.config import Settings

BASE = {"DATABASE_URL": "sqlite+aiosqlite:///:memory:", "JWT_SECRET": "s", "_env_file": None}


class TestSettings:

    def test_defaults(self):
        settings = Settings(**BASE)
        assert settings.MATCH_DEFAULT_RADIUS_M == 5_000
        assert settings.MATCH_MAX_LIMIT == 100
        assert settings.allowed_origins_list == ["*"]
        assert not settings.is_production

    def test_origins_split(self):
        settings = Settings(**BASE, ALLOWED_ORIGINS="https://a.example, https://b.example")
        assert settings.allowed_origins_list == ["https://a.example", "https://b.example"]

    @pytest.mark.parametrize("field,value", [
        ("MATCH_MAX_RADIUS_M", 0),
        ("MATCH_OPERATION_TIMEOUT_SECONDS", -1),
        ("SPATIAL_CELL_SIZE_DEG", 11),
        ("SPATIAL_CELL_SIZE_DEG", 0),
    ])
    def test_rejects_bad_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**BASE, **{field: value})

    def test_default_must_fit_bounds(self):
        with pytest.raises(ValidationError):
            Settings(**BASE, MATCH_DEFAULT_RADIUS_M=200_000)
        with pytest.raises(ValidationError):
            Settings(**BASE, MATCH_DEFAULT_LIMIT=500)
