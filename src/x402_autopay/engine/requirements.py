"""
402 Challenge Parsing

Turns a 402 response into a ``PaymentRequirementSet`` or None. The two wire
encodings are resolved here, once, so nothing downstream inspects raw
headers or bodies:

    header format   ``PAYMENT-REQUIRED: base64(JSON{x402Version, resource, accepts[]})``
                    offers carry ``amount``
    body format     ``{"x402Version", "error", "accepts": [...]}`` JSON body
                    offers carry ``maxAmountRequired``

The header wins when both are present. Undecodable or malformed input in
either place counts as absent and never raises.
"""

import base64
import binascii
import json
import logging
from typing import Any, Optional, Union

import httpx

from ..schemas.https import HttpResult, PaymentOffer, PaymentRequirementSet
from ..schemas.versions import PAYMENT_REQUIRED_HEADER, WireFormat


logger = logging.getLogger(__name__)

_NOT_DECODED = object()


def is_payment_required(response: Union[httpx.Response, HttpResult]) -> bool:
    """True when the response is a 402 challenge."""
    return response.status_code == 402


def _decode_header(value: str) -> Optional[Any]:
    value = value.strip()
    if not value:
        return None
    try:
        padded = value + "=" * (-len(value) % 4)
        return json.loads(base64.b64decode(padded, validate=True))
    except (binascii.Error, ValueError):
        pass
    # Some servers send the JSON unencoded.
    try:
        return json.loads(value)
    except ValueError:
        return None


def _from_header(response: HttpResult) -> Optional[PaymentRequirementSet]:
    raw = None
    for key, value in response.headers.items():
        if key.lower() == PAYMENT_REQUIRED_HEADER.lower():
            raw = value
            break
    if raw is None:
        return None

    challenge = _decode_header(raw)
    if isinstance(challenge, list):
        challenge = {"accepts": challenge}
    try:
        return PaymentRequirementSet.from_challenge(WireFormat.HEADER, challenge)
    except ValueError as exc:
        logger.info("ignoring malformed %s header: %s", PAYMENT_REQUIRED_HEADER, exc)
        return None


def _from_body(body: Any) -> Optional[PaymentRequirementSet]:
    try:
        return PaymentRequirementSet.from_challenge(WireFormat.BODY, body)
    except ValueError as exc:
        logger.info("ignoring malformed 402 body: %s", exc)
        return None


def parse_payment_required(
    response: Union[httpx.Response, HttpResult],
    body: Any = _NOT_DECODED,
) -> Optional[PaymentRequirementSet]:
    """
    Parse the payment requirements of a 402 response.

    Args:
        response: The 402 response (httpx or buffered)
        body: Already-decoded JSON body, when the caller has one

    Returns:
        PaymentRequirementSet or None: None means the challenge carried no
        valid requirements. Whether the response was a 402 at all is the
        caller's check (``is_payment_required``).

    Example:
        if is_payment_required(response):
            requirements = parse_payment_required(response)
            if requirements is None:
                ...  # malformed challenge, distinct from a free resource
    """
    result = response if isinstance(response, HttpResult) else HttpResult.from_response(response)

    requirements = _from_header(result)
    if requirements is not None:
        return requirements

    if body is _NOT_DECODED:
        body = result.json_body()
    return _from_body(body)
