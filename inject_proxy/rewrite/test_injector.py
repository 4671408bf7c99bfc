import pytest

from inject_proxy.config import Occurrence, Placement
from inject_proxy.rewrite.injector import InjectionResult, inject_into_html

PAYLOAD = "<script src='/a.js'></script>"


def test_body_without_marker_is_returned_unchanged(proxy_config):
    config = proxy_config(inject_html=PAYLOAD)
    body = "<html><body>no head close here</body></html>"

    result = inject_into_html(body, config)

    assert result == InjectionResult(body, False)
    assert result.output is body


def test_default_placement_is_before_marker(proxy_config):
    config = proxy_config(inject_html=PAYLOAD)
    body = "<html><head></head><body>hi</body></html>"

    output, changed = inject_into_html(body, config)

    assert changed is True
    assert output == f"<html><head>{PAYLOAD}</head><body>hi</body></html>"


def test_after_placement_puts_payload_after_marker(proxy_config):
    config = proxy_config(inject_html=PAYLOAD, inject_mode=Placement.AFTER)
    body = "<html><head></head><body>hi</body></html>"

    output, changed = inject_into_html(body, config)

    assert changed is True
    assert output.index("</head>") + len("</head>") == output.index(PAYLOAD)


def test_before_placement_position(proxy_config):
    config = proxy_config(inject_html=PAYLOAD, inject_mode=Placement.BEFORE)
    body = "<head></head>"

    output, _ = inject_into_html(body, config)

    assert output.index(PAYLOAD) + len(PAYLOAD) == output.index("</head>")


@pytest.mark.parametrize("occurrence", [Occurrence.FIRST_ONLY, Occurrence.ALL])
def test_single_marker_same_output_for_both_policies(proxy_config, occurrence):
    body = "<html><head><title>t</title></head><body></body></html>"
    expected = f"<html><head><title>t</title>{PAYLOAD}</head><body></body></html>"

    output, changed = inject_into_html(
        body, proxy_config(inject_html=PAYLOAD, inject_once=occurrence)
    )

    assert changed is True
    assert output == expected


def test_first_only_leaves_second_marker_untouched(proxy_config):
    config = proxy_config(
        inject_html=PAYLOAD, inject_target="</body>", inject_once=Occurrence.FIRST_ONLY
    )
    body = "<body>a</body><body>b</body>"

    output, changed = inject_into_html(body, config)

    assert changed is True
    assert output == f"<body>a{PAYLOAD}</body><body>b</body>"
    assert output.count(PAYLOAD) == 1


def test_all_replaces_every_marker(proxy_config):
    config = proxy_config(
        inject_html=PAYLOAD, inject_target="</body>", inject_once=Occurrence.ALL
    )
    body = "<body>a</body><body>b</body>"

    output, changed = inject_into_html(body, config)

    assert changed is True
    assert output == f"<body>a{PAYLOAD}</body><body>b{PAYLOAD}</body>"


@pytest.mark.parametrize("payload", ["", "   ", "\n\t"])
def test_blank_payload_never_changes_body(proxy_config, payload):
    config = proxy_config(inject_html=payload)
    body = "<html><head></head></html>"

    assert inject_into_html(body, config) == (body, False)


def test_empty_marker_is_a_no_op(proxy_config):
    config = proxy_config(inject_html=PAYLOAD, inject_target="")
    body = "<html><head></head></html>"

    assert inject_into_html(body, config) == (body, False)


def test_marker_matching_is_literal_not_html_aware(proxy_config):
    config = proxy_config(inject_html=PAYLOAD, inject_once=Occurrence.ALL)
    body = "<!-- </head> --><script>var s = '</head>';</script>"

    output, changed = inject_into_html(body, config)

    assert changed is True
    assert output.count(PAYLOAD) == 2


def test_marker_with_regex_characters_is_matched_literally(proxy_config):
    config = proxy_config(inject_html=PAYLOAD, inject_target="<!--[inject]-->")
    body = "<head><!--[inject]--></head>"

    output, changed = inject_into_html(body, config)

    assert changed is True
    assert output == f"<head>{PAYLOAD}<!--[inject]--></head>"
