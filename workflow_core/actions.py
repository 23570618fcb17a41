"""
Action Executor Module

Side effects of automation and notification steps are delegated to an
injected ``ActionExecutor``. The default implementation only logs; the HTTP
implementation forwards actions to an external action service.
"""

import httpx
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .exceptions import ExternalActionError

logger = logging.getLogger("workflow.actions")


class ActionExecutor(ABC):
    """Capability the Step Executor uses for external side effects"""

    @abstractmethod
    def run_automation(self, action: str, config: Dict[str, Any],
                       context: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run an automation action.

        Returns:
            Result data stored on the step

        Raises:
            ExternalActionError: if the action failed
        """
        pass

    @abstractmethod
    def send_notification(self, channel: str, recipients: List[str], subject: str,
                          message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Deliver a notification.

        Raises:
            ExternalActionError: if the channel failed
        """
        pass


class LoggingActionExecutor(ActionExecutor):
    """Records actions in the log without performing them"""

    def __init__(self):
        self.history: List[Dict[str, Any]] = []

    def run_automation(self, action: str, config: Dict[str, Any],
                       context: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Automation '{action}' executed (log only)")
        self.history.append({'type': 'automation', 'action': action, 'config': config})
        return {'action': action, 'executed': True}

    def send_notification(self, channel: str, recipients: List[str], subject: str,
                          message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        logger.info(f"Notification via {channel} to {', '.join(recipients) or 'nobody'}: {subject}")
        self.history.append({
            'type': 'notification', 'channel': channel,
            'recipients': list(recipients), 'subject': subject, 'message': message
        })
        return {'channel': channel, 'delivered': True, 'recipients': len(recipients)}


class HttpActionExecutor(ActionExecutor):
    """REST client for an external action service"""

    def __init__(self, base_url: str, timeout: float = 10.0, api_key: Optional[str] = None,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = time.time()
        try:
            response = self._client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ExternalActionError(f"Action service timed out: {e}", {"path": path})
        except httpx.HTTPError as e:
            raise ExternalActionError(f"Action service unreachable: {e}", {"path": path})

        latency_ms = (time.time() - start) * 1000
        if response.status_code >= 400:
            logger.warning(f"Action service returned {response.status_code}: {response.text}")
            raise ExternalActionError(
                f"Action service returned {response.status_code}",
                {"path": path, "status_code": response.status_code}
            )

        logger.debug(f"POST {path} took {latency_ms:.1f}ms")
        try:
            data = response.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {"response": data}

    def run_automation(self, action: str, config: Dict[str, Any],
                       context: Dict[str, Any]) -> Dict[str, Any]:
        return self._post("/automations", {"action": action, "config": config, "context": context})

    def send_notification(self, channel: str, recipients: List[str], subject: str,
                          message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._post("/notifications", {
            "channel": channel,
            "recipients": recipients,
            "subject": subject,
            "message": message,
            "data": data or {}
        })

    def close(self) -> None:
        self._client.close()
