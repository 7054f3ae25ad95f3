import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

import httpx

from callsync.core.config import Settings, settings as default_settings
from callsync.errors import BillingAPIError
from callsync.schemas import BillingCallLeg, OverridePayload, PlatformCall
from callsync.services.matching import LookupCandidate, normalize_caller_id, resolve_platform_call

logger = logging.getLogger(__name__)

CALL_LOG_COLUMNS = (
    "inboundCallId",
    "callDt",
    "callerId",
    "payoutAmount",
    "conversionAmount",
    "hasConnected",
)
MAX_CHAIN_LEGS = 25


class PlatformClient(Protocol):
    def lookup_call(
        self,
        caller_id: str,
        approx_time: datetime,
        window_minutes: float,
        expected_payout: Optional[float] = None,
        known_call_id: Optional[str] = None,
    ) -> Optional[LookupCandidate]:
        ...

    def get_leg_chain(self, call_id: str) -> List[BillingCallLeg]:
        ...

    def override_payment(self, leg_id: str, payload: OverridePayload) -> Dict[str, Any]:
        ...


class BillingClient:
    def __init__(self, config: Settings | None = None, transport: httpx.BaseTransport | None = None) -> None:
        self.settings = config or default_settings
        self.account_id = self.settings.billing_account_id
        self._client = httpx.Client(
            base_url=self.settings.billing_base_url,
            headers={
                "Authorization": f"Token {self.settings.billing_api_token}",
                "Content-Type": "application/json",
            },
            timeout=self.settings.billing_timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "BillingClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def search_calls(self, caller_id: str, start: datetime, end: datetime) -> List[PlatformCall]:
        body = {
            "reportStart": start.isoformat() + "Z",
            "reportEnd": end.isoformat() + "Z",
            "size": 1000,
            "offset": 0,
            "filters": [
                {
                    "anyConditionToMatch": [
                        {
                            "column": "callerId",
                            "value": caller_id,
                            "isNegativeMatch": False,
                            "comparisonType": "EQUALS",
                        }
                    ]
                }
            ],
            "valueColumns": [{"column": column} for column in CALL_LOG_COLUMNS],
        }
        data = self._post(f"/{self.account_id}/calllogs", body)
        return [PlatformCall.model_validate(item) for item in _report_records(data)]

    def lookup_call(
        self,
        caller_id: str,
        approx_time: datetime,
        window_minutes: float,
        expected_payout: Optional[float] = None,
        known_call_id: Optional[str] = None,
    ) -> Optional[LookupCandidate]:
        normalized = normalize_caller_id(caller_id)
        if normalized is None or approx_time is None:
            return None
        day_start = approx_time.replace(hour=0, minute=0, second=0, microsecond=0)
        candidates = self.search_calls(normalized, day_start, day_start + timedelta(days=1))
        logger.debug("Found %s platform calls for %s on %s", len(candidates), normalized, day_start.date())
        return resolve_platform_call(
            approx_time,
            candidates,
            window_minutes,
            expected_payout=expected_payout,
            known_call_id=known_call_id,
        )

    def get_leg(self, leg_id: str) -> BillingCallLeg:
        data = self._post(f"/{self.account_id}/calllogs/detail", {"InboundCallIds": [leg_id]})
        for item in _report_records(data):
            leg = BillingCallLeg.model_validate(item)
            if leg.leg_id == leg_id:
                return leg
        raise BillingAPIError(f"Leg {leg_id} not returned by call detail", payload=data)

    def get_leg_chain(self, call_id: str) -> List[BillingCallLeg]:
        """Fetch every leg linked to ``call_id`` through transfers or reroutes."""
        legs: List[BillingCallLeg] = []
        seen = {call_id}
        pending = deque([call_id])
        while pending:
            if len(legs) >= MAX_CHAIN_LEGS:
                raise BillingAPIError(f"Leg chain of {call_id} exceeds {MAX_CHAIN_LEGS} legs")
            leg = self.get_leg(pending.popleft())
            legs.append(leg)
            for linked in leg.links:
                if linked not in seen:
                    seen.add(linked)
                    pending.append(linked)
        return legs

    def override_payment(self, leg_id: str, payload: OverridePayload) -> Dict[str, Any]:
        return self._post(f"/{self.account_id}/calls/payments/override", payload.to_request(leg_id))

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post(path, json=body)
        except httpx.TimeoutException as exc:
            raise BillingAPIError(f"Timeout calling {path}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise BillingAPIError(f"{type(exc).__name__} calling {path}: {exc}") from exc
        data = _json_or_text(response)
        if response.is_error:
            raise BillingAPIError(_error_message(data, response), status_code=response.status_code, payload=data)
        if isinstance(data, dict) and data.get("isSuccessful") is False:
            raise BillingAPIError(_error_message(data, response), status_code=response.status_code, payload=data)
        return data if isinstance(data, dict) else {"body": data}


def _report_records(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    report = data.get("report") or {}
    return report.get("records") or []


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(data: Any, response: httpx.Response) -> str:
    if isinstance(data, dict):
        errors = data.get("errors") or []
        messages = [str(item.get("message", item)) if isinstance(item, dict) else str(item) for item in errors]
        if data.get("message"):
            messages.insert(0, str(data["message"]))
        if messages:
            return f"HTTP {response.status_code}: {'; '.join(messages)}"
    text = str(data).strip() if data else response.reason_phrase
    return f"HTTP {response.status_code}: {text}"
