"""
Tests for the intake tool manifest and local executor.
"""

import re

import pytest

from src.intake.tools import (
    SAVE_INTAKE_DATA,
    TRANSFER_TO_ATTORNEY,
    TRANSFER_TO_MAIN_LINE,
    TRANSFER_TOOLS,
    IntakeRecord,
    IntakeToolExecutor,
    generate_case_number,
    is_transfer_tool,
    parse_tool_arguments,
    safe_json_dumps,
    tool_definitions,
)


def test_case_number_format():
    case_number = generate_case_number(now_ms=1700000000000)

    assert re.fullmatch(r"ILH-1700000000000-[A-Z0-9]{5}", case_number)


def test_case_number_uses_current_time():
    assert re.fullmatch(r"ILH-\d{13}-[A-Z0-9]{5}", generate_case_number())


def test_transfer_tool_classification():
    assert is_transfer_tool(TRANSFER_TO_MAIN_LINE)
    assert is_transfer_tool(TRANSFER_TO_ATTORNEY)
    assert not is_transfer_tool(SAVE_INTAKE_DATA)
    assert not is_transfer_tool(None)


def test_tool_definitions_names():
    names = [t["function"]["name"] for t in tool_definitions()]

    assert names == [TRANSFER_TO_MAIN_LINE, TRANSFER_TO_ATTORNEY, SAVE_INTAKE_DATA]


def test_save_intake_requires_every_field():
    save = next(t for t in tool_definitions() if t["function"]["name"] == SAVE_INTAKE_DATA)
    required = save["function"]["parameters"]["required"]

    assert set(required) == set(IntakeRecord().missing)
    assert len(required) == 10


class TestIntakeRecord:

    def test_update_from_ignores_unknown_and_blank(self):
        record = IntakeRecord()
        record.update_from({"name": " Jane Doe ", "phoneNumber": "", "favoriteColor": "blue"})

        assert record.name == "Jane Doe"
        assert record.phoneNumber is None
        assert "name" not in record.missing
        assert "phoneNumber" in record.missing

    def test_update_from_non_dict(self):
        record = IntakeRecord()
        record.update_from(None)

        assert record.to_public_dict()["name"] is None


class TestExecutor:

    @pytest.mark.asyncio
    async def test_save_intake_data(self):
        executor = IntakeToolExecutor(call_sid="CA1")

        result = await executor.execute(SAVE_INTAKE_DATA, {"name": "Jane Doe", "accidentDate": "May 1"})

        assert result["status"] == "success"
        assert result["message"] == "Intake data saved successfully"
        assert result["caseNumber"].startswith("ILH-")
        assert executor.case_number == result["caseNumber"]
        assert executor.record.accidentDate == "May 1"

    @pytest.mark.asyncio
    async def test_transfer_to_main_line(self):
        result = await IntakeToolExecutor().execute(TRANSFER_TO_MAIN_LINE, {"callSid": "CA1"})

        assert result == {"status": "transfer_pending", "say": TRANSFER_TOOLS[TRANSFER_TO_MAIN_LINE]}

    @pytest.mark.asyncio
    async def test_transfer_to_attorney_keeps_intake(self):
        executor = IntakeToolExecutor(call_sid="CA1")

        result = await executor.execute(
            TRANSFER_TO_ATTORNEY,
            {"callSid": "CA1", "intakeData": {"name": "Jane Doe"}},
        )

        assert result["status"] == "transfer_pending"
        assert result["attorneyName"]
        assert executor.record.name == "Jane Doe"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await IntakeToolExecutor().execute("orderPizza", {})

        assert result == {"status": "error", "error": "unknown_tool:orderPizza"}


class TestArguments:

    def test_parse_valid(self):
        assert parse_tool_arguments('{"callSid": "CA1"}') == {"callSid": "CA1"}

    def test_parse_empty_and_malformed(self):
        assert parse_tool_arguments("") == {}
        assert parse_tool_arguments(None) == {}
        assert parse_tool_arguments('{"callSid": ') == {}
        assert parse_tool_arguments("[1, 2]") == {}

    def test_safe_json_dumps(self):
        assert safe_json_dumps({"a": "é"}) == '{"a": "é"}'
        assert "json_encode_failed" in safe_json_dumps({"a": object()})
