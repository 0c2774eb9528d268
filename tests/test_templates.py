from taskpilot.tasks.templates import interpolate, load_step_output, resolve_templates

MEMORY = {
    "step_1": '{"success":true,"hour":12,"formatted_24h":"12:00","tags":["a","b"]}',
    "step_2": "not json",
    "reminded_today": "false",
    "profile": '{"name":"Ana","address":{"city":"Lisbon"}}',
}


def test_lone_reference_keeps_raw_value() -> None:
    args = resolve_templates(
        {"target_hour": "{{step_1.hour}}", "tags": "{{ step_1.tags }}"},
        MEMORY,
    )

    assert args == {"target_hour": 12, "tags": ["a", "b"]}


def test_embedded_references_are_rendered_as_text() -> None:
    text = interpolate("At {{step_1.formatted_24h}}, reminded={{reminded_today}}", MEMORY)

    assert text == "At 12:00, reminded=false"


def test_json_memory_values_can_be_walked() -> None:
    assert interpolate("{{profile.address.city}}", MEMORY) == "Lisbon"


def test_unresolved_references_stay_as_written() -> None:
    args = resolve_templates(
        {"a": "{{step_9.value}}", "b": ["x {{missing}}", 3], "c": "{{step_1.nope}}"},
        MEMORY,
    )

    assert args == {"a": "{{step_9.value}}", "b": ["x {{missing}}", 3], "c": "{{step_1.nope}}"}


def test_load_step_output_falls_back_to_raw_text() -> None:
    assert load_step_output(MEMORY, 2) == "not json"
    assert load_step_output(MEMORY, 7) is None
    assert load_step_output(MEMORY, 1)["hour"] == 12
