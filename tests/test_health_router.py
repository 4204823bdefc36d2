from unittest.mock import Mock

from sqlalchemy.exc import OperationalError

from medalapi.database.session import get_db


class TestHealthRoute:
    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["error"] is None

    def test_health_check_reports_database_failure(self, app, client):
        """DB 연결 실패 시에도 응답은 200, 상태는 degraded"""
        broken_session = Mock()
        broken_session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("refused"))
        app.dependency_overrides[get_db] = lambda: broken_session

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["database_connected"] is False
        assert "refused" in data["error"]
