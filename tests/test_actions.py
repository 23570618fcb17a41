"""
Tests for action executors (log-only and HTTP action service client)
"""

import pytest
from unittest.mock import Mock, patch
import httpx

from workflow_core.actions import HttpActionExecutor, LoggingActionExecutor
from workflow_core.exceptions import ExternalActionError


class TestLoggingActionExecutor:
    """Test the log-only executor"""

    def test_automation_is_recorded(self):
        executor = LoggingActionExecutor()

        result = executor.run_automation("sync_crm", {"batch": 10}, {"customer": "c-1"})

        assert result == {"action": "sync_crm", "executed": True}
        assert executor.history == [{"type": "automation", "action": "sync_crm", "config": {"batch": 10}}]

    def test_notification_is_recorded(self):
        executor = LoggingActionExecutor()

        result = executor.send_notification("email", ["alice", "bob"], "Hello", "Body")

        assert result == {"channel": "email", "delivered": True, "recipients": 2}
        assert executor.history[0]["recipients"] == ["alice", "bob"]


class TestHttpActionExecutor:
    """Test the HTTP action service client"""

    def setup_method(self):
        self.executor = HttpActionExecutor("http://actions.local/", timeout=2.0, api_key="test-key")

    def teardown_method(self):
        self.executor.close()

    @patch('httpx.Client.post')
    def test_successful_automation(self, mock_post):
        """Test a successful automation call"""
        mock_response = Mock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"ticket": "T-1"}
        mock_post.return_value = mock_response

        result = self.executor.run_automation("open_ticket", {"queue": "ops"}, {"amount": 5})

        assert result == {"ticket": "T-1"}
        call_args = mock_post.call_args
        assert call_args[0][0] == "http://actions.local/automations"
        assert call_args.kwargs["headers"]["Authorization"] == "Bearer test-key"
        assert call_args.kwargs["json"] == {
            "action": "open_ticket", "config": {"queue": "ops"}, "context": {"amount": 5}
        }

    @patch('httpx.Client.post')
    def test_successful_notification(self, mock_post):
        mock_response = Mock()
        mock_response.status_code = 202
        mock_response.json.return_value = {"delivered": True}
        mock_post.return_value = mock_response

        result = self.executor.send_notification("sms", ["alice"], "Subject", "Message", {"k": "v"})

        assert result == {"delivered": True}
        assert mock_post.call_args[0][0] == "http://actions.local/notifications"
        assert mock_post.call_args.kwargs["json"]["data"] == {"k": "v"}

    @patch('httpx.Client.post')
    def test_non_dict_body_is_wrapped(self, mock_post):
        mock_response = Mock()
        mock_response.status_code = 200
        mock_response.json.return_value = ["ok"]
        mock_post.return_value = mock_response

        assert self.executor.run_automation("noop", {}, {}) == {"response": ["ok"]}

    @patch('httpx.Client.post')
    def test_http_error_status(self, mock_post):
        """Test error status codes become ExternalActionError"""
        mock_response = Mock()
        mock_response.status_code = 500
        mock_response.text = "Internal Server Error"
        mock_post.return_value = mock_response

        with pytest.raises(ExternalActionError) as exc_info:
            self.executor.run_automation("open_ticket", {}, {})
        assert exc_info.value.details["status_code"] == 500

    @patch('httpx.Client.post')
    def test_connection_error(self, mock_post):
        mock_post.side_effect = httpx.ConnectError("Connection failed")

        with pytest.raises(ExternalActionError, match="unreachable"):
            self.executor.send_notification("email", ["alice"], "s", "m")

    @patch('httpx.Client.post')
    def test_timeout(self, mock_post):
        mock_post.side_effect = httpx.ReadTimeout("too slow")

        with pytest.raises(ExternalActionError, match="timed out"):
            self.executor.run_automation("slow", {}, {})

    @patch('httpx.Client.post')
    def test_no_auth_header_without_key(self, mock_post):
        mock_response = Mock()
        mock_response.status_code = 200
        mock_response.json.return_value = {}
        mock_post.return_value = mock_response
        executor = HttpActionExecutor("http://actions.local")

        executor.run_automation("noop", {}, {})

        assert mock_post.call_args.kwargs["headers"] == {}
        executor.close()
