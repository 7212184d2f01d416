"""SMS gateways and country-based routing.

Carrier HTTP clients are not bundled. Each gateway builds the carrier's
request payload and hands it to a ``transport`` callable, which returns the
decoded JSON body. Without a transport the message is logged instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Protocol

from pastcare.config import DEFAULT_AFRICAS_TALKING_COUNTRIES, DEFAULT_TWILIO_COUNTRIES
from pastcare.logging import get_logger
from pastcare.service.phone import PhoneNumberService

logger = get_logger(__name__)

SmsTransport = Callable[[Dict[str, Any]], Dict[str, Any]]


class SmsGatewayType(str, Enum):
    AFRICAS_TALKING = "africas_talking"
    TWILIO = "twilio"


@dataclass
class SmsGatewayResponse:
    success: bool
    message_id: Optional[str] = None
    status: Optional[str] = None
    error_message: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)


class SmsGateway(Protocol):
    gateway_type: SmsGatewayType

    def supports_country(self, country_code: str) -> bool: ...

    def send_sms(
        self, to: str, message: str, metadata: Optional[Dict[str, str]] = None
    ) -> SmsGatewayResponse: ...


class _BaseGateway:
    gateway_type: SmsGatewayType

    def __init__(
        self,
        phone_numbers: PhoneNumberService,
        supported_countries: Iterable[str],
        *,
        transport: Optional[SmsTransport] = None,
    ) -> None:
        self.phone_numbers = phone_numbers
        self.supported_countries = frozenset(supported_countries)
        self.transport = transport

    def _build_payload(self, to: str, message: str) -> Dict[str, Any]:
        raise NotImplementedError

    def _parse_response(self, body: Dict[str, Any]) -> SmsGatewayResponse:
        raise NotImplementedError

    def send_sms(
        self, to: str, message: str, metadata: Optional[Dict[str, str]] = None
    ) -> SmsGatewayResponse:
        normalized = self.phone_numbers.normalize(to) or ""
        if self.transport is None:
            # Dev mode: log the message instead of sending
            logger.info(
                "sms_dev_mode",
                gateway=self.gateway_type.value,
                phone=normalized,
                parts=self.phone_numbers.message_count(message),
                metadata=metadata or {},
            )
            return SmsGatewayResponse(success=True, status="logged")
        try:
            body = self.transport(self._build_payload(normalized, message))
        except Exception as exc:
            logger.error(
                "sms_send_failed",
                gateway=self.gateway_type.value,
                phone=normalized,
                error=str(exc),
            )
            return SmsGatewayResponse(success=False, error_message=str(exc))
        response = self._parse_response(body or {})
        logger.info(
            "sms_sent",
            gateway=self.gateway_type.value,
            phone=normalized,
            success=response.success,
            status=response.status,
        )
        return response


class AfricasTalkingGateway(_BaseGateway):
    gateway_type = SmsGatewayType.AFRICAS_TALKING

    def __init__(
        self,
        phone_numbers: PhoneNumberService,
        supported_countries: Iterable[str] = DEFAULT_AFRICAS_TALKING_COUNTRIES,
        *,
        sender_id: Optional[str] = None,
        transport: Optional[SmsTransport] = None,
    ) -> None:
        super().__init__(phone_numbers, supported_countries, transport=transport)
        self.sender_id = sender_id

    def supports_country(self, country_code: str) -> bool:
        return country_code in self.supported_countries

    def _build_payload(self, to: str, message: str) -> Dict[str, Any]:
        payload = {"to": to, "message": message}
        if self.sender_id:
            payload["from"] = self.sender_id
        return payload

    def _parse_response(self, body: Dict[str, Any]) -> SmsGatewayResponse:
        recipients = (body.get("SMSMessageData") or {}).get("Recipients") or []
        if not recipients:
            return SmsGatewayResponse(
                success=False,
                error_message="No recipients in response",
                raw_response=body,
            )
        recipient = recipients[0]
        status = recipient.get("status")
        status_code = str(recipient.get("statusCode", ""))
        return SmsGatewayResponse(
            success=(status or "").lower() in {"success", "sent"},
            message_id=recipient.get("messageId"),
            status=status,
            error_message=None
            if status_code in {"200", "201"}
            else f"SMS failed with status: {status}",
            raw_response=body,
        )


class TwilioGateway(_BaseGateway):
    gateway_type = SmsGatewayType.TWILIO

    def __init__(
        self,
        phone_numbers: PhoneNumberService,
        supported_countries: Iterable[str] = DEFAULT_TWILIO_COUNTRIES,
        *,
        from_number: Optional[str] = None,
        transport: Optional[SmsTransport] = None,
    ) -> None:
        super().__init__(phone_numbers, supported_countries, transport=transport)
        self.from_number = from_number

    def supports_country(self, country_code: str) -> bool:
        # anything outside the +2xx African range
        return country_code in self.supported_countries or not country_code.startswith("+2")

    def _build_payload(self, to: str, message: str) -> Dict[str, Any]:
        return {"To": to, "From": self.from_number, "Body": message}

    def _parse_response(self, body: Dict[str, Any]) -> SmsGatewayResponse:
        if "sid" not in body:
            return SmsGatewayResponse(
                success=False, error_message="Invalid API response", raw_response=body
            )
        error_message = body.get("error_message")
        return SmsGatewayResponse(
            success=error_message is None,
            message_id=body["sid"],
            status=body.get("status"),
            error_message=error_message,
            raw_response=body,
        )


class SmsGatewayRouter:
    """Send through Africa's Talking where it covers the country, else Twilio."""

    def __init__(
        self,
        phone_numbers: PhoneNumberService,
        africas_talking: AfricasTalkingGateway,
        twilio: TwilioGateway,
    ) -> None:
        self.phone_numbers = phone_numbers
        self.africas_talking = africas_talking
        self.twilio = twilio

    def select_gateway(self, phone_number: str) -> SmsGateway:
        country_code = self.phone_numbers.extract_country_code(phone_number)
        if self.africas_talking.supports_country(country_code):
            logger.debug("sms_gateway_selected", gateway="africas_talking", country_code=country_code)
            return self.africas_talking
        logger.debug("sms_gateway_selected", gateway="twilio", country_code=country_code)
        return self.twilio

    def send_sms(
        self, to: str, message: str, metadata: Optional[Dict[str, str]] = None
    ) -> SmsGatewayResponse:
        return self.select_gateway(to).send_sms(to, message, metadata)

    def get_gateway(self, gateway_type: Optional[SmsGatewayType | str]) -> SmsGateway:
        if gateway_type == SmsGatewayType.TWILIO:
            return self.twilio
        return self.africas_talking
