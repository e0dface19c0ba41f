"""Merge accepted fragments into one flat, validated analytics record."""

import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qs, urlsplit

from log_processor.config import API_KEY_METHODS
from log_processor.errors import InvalidLogError
from log_processor.models import LogFragments

logger = logging.getLogger(__name__)

POLICY_FIELDS = {
    "api_key": "api_key",
    "denied_code": "denied_code",
    "internal_policy_time": "internal_policy_time",
    "internal_response_time": "internal_response_time",
    "user_email": "user_email",
    "user_id": "user_id",
    "user_registration_source": "user_registration_source",
}

EDGE_FIELDS = {
    "request_accept": "req_accept",
    "request_accept_encoding": "req_accept_encoding",
    "request_basic_auth_username": "req_basic_auth_username",
    "request_connection": "req_connection",
    "request_content_type": "req_content_type",
    "request_host": "req_host",
    "request_ip": "req_ip",
    "request_method": "req_method",
    "request_origin": "req_origin",
    "request_referer": "req_referer",
    "request_scheme": "req_scheme",
    "request_size": "req_size",
    "request_user_agent": "req_user_agent",
    "response_age": "res_age",
    "response_content_encoding": "res_content_encoding",
    "response_content_length": "res_content_length",
    "response_content_type": "res_content_type",
    "response_server": "res_server",
    "response_size": "res_size",
    "response_status": "res_status",
    "response_transfer_encoding": "res_transfer_encoding",
}

API_KEY_SOURCES = {
    "header": "req_api_key_header",
    "getParam": "req_api_key_query",
    "basicAuthUsername": "req_basic_auth_username",
}


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def format_timestamp(epoch_seconds: float) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def request_started_at(edge: dict) -> Optional[str]:
    """Request start time: response completion minus elapsed response time."""
    finished = edge.get("req_at_msec")
    if not _is_number(finished):
        return None
    elapsed = edge.get("res_time")
    if not _is_number(elapsed):
        elapsed = 0
    return format_timestamp(finished - elapsed)


def build_request_url(edge: dict) -> Optional[str]:
    scheme = edge.get("req_scheme")
    host = edge.get("req_host")
    if not scheme or not host:
        return None
    return f"{scheme}://{host}{edge.get('req_uri') or ''}"


def url_hierarchy(host: str, path: str) -> list[str]:
    """Depth-prefixed path levels used for drill-down aggregations.

    ``("a.example", "/x/y")`` -> ``["0/a.example/", "1/a.example/x/", "2/a.example/x/y"]``
    """
    parts = [host] + [segment for segment in path.split("/") if segment]
    levels = []
    for depth in range(len(parts)):
        level = f"{depth}/" + "/".join(parts[: depth + 1])
        if depth < len(parts) - 1 or path.endswith("/"):
            level += "/"
        levels.append(level)
    return levels


def apply_url_fields(record: dict) -> dict:
    """Derive path, query and hierarchy fields from ``request_url`` in place.

    Also used by the reindex utility to backfill historical documents.
    """
    record.pop("request_path_hierarchy", None)
    url = record.get("request_url")
    if not url:
        return record

    parts = urlsplit(url)
    host = record.get("request_host") or parts.netloc
    record["request_path"] = parts.path
    if parts.query:
        record["request_url_query"] = parts.query
        record["request_query"] = {
            key: values[0]
            for key, values in parse_qs(parts.query, keep_blank_values=True).items()
        }
    record["request_hierarchy"] = url_hierarchy(host, parts.path)
    return record


def _fallback_api_key(edge: dict, methods) -> Optional[str]:
    for method in methods:
        api_key = edge.get(API_KEY_SOURCES[method])
        if api_key:
            return api_key
    return None


def _copy_fields(target: dict, source: dict, mapping: dict):
    for field_name, source_name in mapping.items():
        value = source.get(source_name)
        if value is not None:
            target[field_name] = value


def clean_log(fragments: LogFragments, api_key_methods=API_KEY_METHODS) -> dict:
    """Merge fragments into a canonical record.

    Raises InvalidLogError when the result has no request_url or
    request_at; that means bad upstream data, not a late fragment.
    """
    record: dict = {}

    if fragments.policy is not None:
        _copy_fields(record, fragments.policy, POLICY_FIELDS)

    if fragments.backend is not None:
        backend_time = fragments.backend.get("res_time_backend")
        if _is_number(backend_time):
            record["backend_response_time"] = backend_time * 1000

    edge = fragments.edge
    if edge is not None:
        _copy_fields(record, edge, EDGE_FIELDS)

        request_at = request_started_at(edge)
        if request_at:
            record["request_at"] = request_at
        request_url = build_request_url(edge)
        if request_url:
            record["request_url"] = request_url
        if _is_number(edge.get("res_time")):
            record["response_time"] = edge["res_time"] * 1000

        # Fill in the user from the edge data when the policy gateway never
        # saw the request (edge rate limits, gateway down).
        if not record.get("api_key"):
            api_key = _fallback_api_key(edge, api_key_methods)
            if api_key:
                record["api_key"] = api_key

        observed = edge.get("res_time_backend")
        if "backend_response_time" in record and _is_number(observed):
            record["proxy_overhead"] = observed * 1000 - record["backend_response_time"]

    if not record.get("request_url"):
        message = "Log data did not contain expected request_url field."
    elif not record.get("request_at"):
        message = "Log data did not contain expected request_at field."
    else:
        return apply_url_fields(record)

    logger.error("Log data error: %s", message)
    raise InvalidLogError(message)
