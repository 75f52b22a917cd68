from __future__ import annotations

import json
import random
import string
import time
from dataclasses import asdict, dataclass, fields
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)

TRANSFER_TO_MAIN_LINE = "transferToMainLine"
TRANSFER_TO_ATTORNEY = "transferToAttorney"
SAVE_INTAKE_DATA = "saveIntakeData"

# What the agent says before handing the call over. Spoken instead of any
# text the model produced alongside the tool call.
TRANSFER_TOOLS: dict[str, str] = {
    TRANSFER_TO_MAIN_LINE: "Let me transfer you to our main line.",
    TRANSFER_TO_ATTORNEY: (
        "Ok, I think we can help you. Please hold for a moment while I transfer you "
        "to the attorney who will help you from here forward."
    ),
}

SAVE_INTAKE_SAY = "I'm saving your information to our system."


@dataclass
class IntakeRecord:
    name: Optional[str] = None
    phoneNumber: Optional[str] = None
    emailAddress: Optional[str] = None
    accidentDate: Optional[str] = None
    injuryDescription: Optional[str] = None
    medicalTreatment: Optional[str] = None
    atFaultParty: Optional[str] = None
    policeReport: Optional[str] = None
    otherPartyInsurance: Optional[str] = None
    signedDocuments: Optional[str] = None

    def update_from(self, data: dict[str, Any]) -> None:
        if not isinstance(data, dict):
            return
        for f in fields(self):
            value = data.get(f.name)
            if value is not None:
                setattr(self, f.name, str(value).strip() or None)

    @property
    def missing(self) -> list[str]:
        return [f.name for f in fields(self) if not getattr(self, f.name)]

    def to_public_dict(self) -> dict[str, Any]:
        return asdict(self)


def generate_case_number(now_ms: Optional[int] = None) -> str:
    """ILH-<epoch ms>-<5 uppercase alphanumerics>."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"ILH-{now_ms}-{suffix}"


def is_transfer_tool(name: Optional[str]) -> bool:
    return bool(name) and name in TRANSFER_TOOLS


def tool_definitions() -> list[dict[str, Any]]:
    """Chat-completions tool manifest for the intake agent."""
    call_sid_param = {
        "callSid": {
            "type": "string",
            "description": "The unique identifier for the active phone call.",
        },
    }
    return [
        {
            "type": "function",
            "function": {
                "name": TRANSFER_TO_MAIN_LINE,
                "description": (
                    "Transfer the caller to the main office line when they are not calling about a new case."
                ),
                "parameters": {
                    "type": "object",
                    "properties": dict(call_sid_param),
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": TRANSFER_TO_ATTORNEY,
                "description": (
                    "Transfer the caller to an attorney after completing the preliminary intake process."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        **call_sid_param,
                        "intakeData": {
                            "type": "object",
                            "description": (
                                "The collected intake information including name, phone, email, "
                                "accident details, etc."
                            ),
                        },
                    },
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": SAVE_INTAKE_DATA,
                "description": "Save the collected intake information to the law firm's database.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "description": "The caller's full name"},
                        "phoneNumber": {"type": "string", "description": "The caller's phone number"},
                        "emailAddress": {"type": "string", "description": "The caller's email address"},
                        "accidentDate": {"type": "string", "description": "The date of the accident"},
                        "injuryDescription": {
                            "type": "string",
                            "description": "Description of injuries and accident details",
                        },
                        "medicalTreatment": {
                            "type": "string",
                            "description": "Information about hospital visits and medical treatment",
                        },
                        "atFaultParty": {
                            "type": "string",
                            "description": "Information about who was at fault",
                        },
                        "policeReport": {
                            "type": "string",
                            "description": "Information about police report and whether caller has a copy",
                        },
                        "otherPartyInsurance": {
                            "type": "string",
                            "description": "Information about the other party's insurance",
                        },
                        "signedDocuments": {
                            "type": "string",
                            "description": (
                                "Information about any documents signed with insurance companies or other lawyers"
                            ),
                        },
                    },
                    "required": [f.name for f in fields(IntakeRecord)],
                },
            },
        },
    ]


class IntakeToolExecutor:
    """
    Local side of the intake tools.

    Transfers are not executed here: the session's transfer handshake owns
    that side effect. Their result only tells the model the hand-off started.
    """

    def __init__(self, *, call_sid: str = ""):
        self.call_sid = call_sid
        self.record = IntakeRecord()
        self.case_number: Optional[str] = None

    async def execute(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        started = time.time()
        try:
            if tool_name == SAVE_INTAKE_DATA:
                return self._save_intake_data(args, started=started)
            if is_transfer_tool(tool_name):
                return self._transfer(tool_name, args)
            return {"status": "error", "error": f"unknown_tool:{tool_name}"}
        except Exception as e:
            logger.exception("Intake tool execution failed", tool=tool_name, call_sid=self.call_sid)
            return {"status": "error", "error": str(e)}

    def _save_intake_data(self, args: dict[str, Any], *, started: float) -> dict[str, Any]:
        self.record.update_from(args)
        self.case_number = generate_case_number()
        logger.info(
            "Intake data saved",
            call_sid=self.call_sid,
            case_number=self.case_number,
            fields=sorted(k for k in args.keys() if args.get(k)),
            missing=self.record.missing,
            ms=int((time.time() - started) * 1000),
        )
        return {
            "caseNumber": self.case_number,
            "status": "success",
            "message": "Intake data saved successfully",
        }

    def _transfer(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        intake = args.get("intakeData")
        if isinstance(intake, dict):
            self.record.update_from(intake)
        logger.info("Transfer tool invoked", call_sid=self.call_sid, tool=tool_name)
        result: dict[str, Any] = {"status": "transfer_pending", "say": TRANSFER_TOOLS[tool_name]}
        if tool_name == TRANSFER_TO_ATTORNEY:
            result["attorneyName"] = "Attorney Intake"
        return result


def parse_tool_arguments(raw: Optional[str]) -> dict[str, Any]:
    """Decode streamed tool-call arguments; malformed JSON becomes {}."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("Malformed tool arguments", raw=raw[:200])
        return {}
    return value if isinstance(value, dict) else {}


def safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return json.dumps({"status": "error", "error": "json_encode_failed"})
