"""
Subject naming and wildcard matching for the request/response bus.

Requests go out on  emit/uxi/<role>/plan/<plan_id>/<action>
Responses come back on echo/abs/<role>/plan/<plan_id>/<action>

Wildcards follow MQTT: '+' matches exactly one level, '#' matches the
remainder (including nothing) and must be the last level.
"""

from __future__ import annotations

REQUEST_PREFIX = "emit/uxi"
RESPONSE_PREFIX = "echo/abs"

ACTION_IDENTIFY_CUSTOMER = "identify_customer"
ACTION_PAYMENT_AND_SERVICE = "payment_and_service"


def topic_matches(pattern: str, topic: str) -> bool:
    pattern_parts = pattern.split("/")
    topic_parts = topic.split("/")

    for i, part in enumerate(pattern_parts):
        if part == "#":
            return True
        if part == "+":
            if i >= len(topic_parts):
                return False
            continue
        if i >= len(topic_parts) or part != topic_parts[i]:
            return False

    return len(pattern_parts) == len(topic_parts)


def request_topic(role: str, plan_id: str, action: str) -> str:
    return f"{REQUEST_PREFIX}/{role}/plan/{plan_id}/{action}"


def response_topic(role: str, plan_id: str, action: str) -> str:
    return f"{RESPONSE_PREFIX}/{role}/plan/{plan_id}/{action}"


def response_for(request: str) -> str:
    """Derive the response subject for a request subject."""
    if request.startswith(REQUEST_PREFIX + "/"):
        return RESPONSE_PREFIX + request[len(REQUEST_PREFIX):]
    raise ValueError(f"not a request subject: {request}")
