from typing import Mapping, Optional

from inject_proxy.config import ProxyConfig


def _header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None


def is_eligible(
    headers: Mapping[str, str], config: ProxyConfig, skip_injection: bool = False
) -> bool:
    """
    Decide whether a buffered response may be handed to the injector.

    Every configured rule must pass:
    - the request was not excluded by path when it was received
    - the content-type contains ``config.content_type_match`` (substring,
      case-insensitive), unless that filter is empty
    - a header named ``config.required_header`` is present, unless that
      filter is empty. Only presence counts, the value is never inspected.
    """
    if skip_injection:
        return False

    if config.content_type_match:
        content_type = (_header_value(headers, "content-type") or "").lower()
        if config.content_type_match.lower() not in content_type:
            return False

    if config.required_header:
        if _header_value(headers, config.required_header) is None:
            return False

    return True
