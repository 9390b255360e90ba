"""
Regression tests for core CallQC wiring.

Run these BEFORE and AFTER any feature changes to ensure nothing breaks.

Usage:
    pytest tests/regression/ -v
    pytest tests/regression/test_core_features.py -v
"""

import pytest


class TestBackendImports:
    """Verify core backend modules can be imported."""

    def test_main_app_imports(self):
        """Main FastAPI app should import without errors."""
        from backend.callqc.main import app
        assert app is not None
        assert app.title == "Call Quality Control"

    def test_config_imports(self):
        """Configuration should load."""
        from backend.callqc.config import settings
        assert settings is not None
        assert settings.environment == "test"

    def test_database_imports(self):
        """Database module should import."""
        from backend.callqc.database import Database, get_db
        assert Database is not None
        assert get_db is not None

    def test_stt_registry_imports(self):
        """STT registry should import without any vendor keys."""
        from backend.callqc.services.stt import TranscriptionManager
        assert TranscriptionManager().available_providers() == []


class TestDatabaseOperations:
    """Verify database operations work."""

    def test_db_connection(self, services):
        """Database connection should work."""
        assert services.db.ping() is True

    def test_session_dependency(self, services):
        """get_db should yield a working session and close it."""
        from sqlalchemy import text
        from backend.callqc.database import get_db

        db_sessions = get_db(services.db)
        db = next(db_sessions)
        assert db.execute(text("SELECT 1")).scalar() == 1
        db_sessions.close()

    def test_tables_exist(self, services):
        """Required tables should exist."""
        from sqlalchemy import inspect

        tables = set(inspect(services.db.engine).get_table_names())
        assert {"organizations", "users", "calls", "transcripts", "analyses",
                "notifications", "user_preferences", "jobs"} <= tables

    def test_wal_journal(self, services):
        """File databases run in WAL mode."""
        assert services.db.journal_mode().lower() == "wal"


class TestAPIEndpoints:
    """Verify API endpoints are registered."""

    @pytest.fixture
    def routes(self):
        from backend.callqc.main import app
        return {getattr(route, "path", None) for route in app.routes}

    def test_health_endpoint_registered(self, routes):
        """Health endpoints should be registered."""
        assert "/health" in routes
        assert "/health/detailed" in routes

    def test_webhook_endpoint_registered(self, routes):
        """Exotel webhook should be registered."""
        assert "/webhook/exotel" in routes
        assert "/webhook/exotel/mock" in routes

    def test_calls_endpoints_registered(self, routes):
        """Call and analysis endpoints should be registered."""
        assert "/api/calls" in routes
        assert "/api/calls/{call_id}/analyze" in routes
        assert "/api/calls/{call_id}/reanalyze" in routes
        assert "/api/analyses/alerts" in routes

    def test_reports_endpoints_registered(self, routes):
        """Report and notification endpoints should be registered."""
        assert "/api/reports/daily" in routes
        assert "/api/reports/daily/send" in routes
        assert "/api/notifications/settings" in routes


class TestModels:
    """Verify database models are defined correctly."""

    def test_call_model_exists(self):
        """Call model should be defined."""
        from backend.callqc.models import Call
        assert hasattr(Call, 'external_call_sid')
        assert hasattr(Call, 'status')

    def test_transcript_model_exists(self):
        """Transcript model should be defined."""
        from backend.callqc.models import Transcript
        assert hasattr(Transcript, 'call_id')
        assert hasattr(Transcript, 'content')

    def test_analysis_model_exists(self):
        """Analysis model should be defined."""
        from backend.callqc.models import Analysis
        assert hasattr(Analysis, 'call_id')
        assert hasattr(Analysis, 'overall_score')


class TestConfigurationValues:
    """Verify configuration is set correctly."""

    def test_project_name_set(self):
        """Project name should be set."""
        from backend.callqc.config import settings
        assert settings.project_name == "Call Quality Control"

    def test_rubric_weights_sum_to_one(self):
        """Rubric weights should add up to 100%."""
        from backend.callqc.config import RUBRIC_WEIGHTS
        assert sum(RUBRIC_WEIGHTS.values()) == pytest.approx(1.0)
        assert len(RUBRIC_WEIGHTS) == 5

    def test_score_bands(self):
        """Thresholds should split scores into four bands."""
        from backend.callqc.config import ScoringConfig
        scoring = ScoringConfig()
        assert [scoring.classify(s) for s in (90, 85, 70, 50, 49.9)] == [
            "excellent", "excellent", "good", "needs_improvement", "poor",
        ]

    def test_explicit_settings_override_environment(self):
        """Keyword arguments should win over environment variables."""
        from backend.callqc.config import Settings
        assert Settings(environment="production").environment == "production"


# Run with: pytest tests/regression/test_core_features.py -v
if __name__ == "__main__":
    pytest.main([__file__, "-v"])
