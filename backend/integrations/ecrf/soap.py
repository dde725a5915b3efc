"""
SOAP client for the remote eCRF platform.

Each operation is one HTTP POST carrying a SOAP envelope; the response body
holds a `result` (a plain value or an embedded XML document) and an
`ErrorMsg`. A non-empty `ErrorMsg` becomes an `ECRFError`.

The session token obtained by `open()` is sent with every call.
"""

import xml.etree.ElementTree as ET
from collections.abc import Sequence
from datetime import date, datetime
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import Settings, get_settings
from core.errors import ECRFError, ErrorCode
from integrations.ecrf.client import ECRFClient
from integrations.ecrf.models import (
    ContactData,
    RemoteAdmission,
    RemoteCase,
    RemoteForm,
    RemoteSubscription,
    RemoteTask,
    RemoteTeam,
)
from integrations.ecrf.questions import Question, QuestionType, question_for

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
WS_NS = "urn:LinkcareWS"

ET.register_namespace("soapenv", SOAP_ENV_NS)
ET.register_namespace("ws", WS_NS)


def _text(node: ET.Element | None, path: str, default: str | None = None) -> str | None:
    if node is None:
        return default
    found = node.find(path)
    if found is None or found.text is None:
        return default
    return found.text.strip()


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def build_envelope(method: str, params: dict[str, Any]) -> bytes:
    envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
    body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    call = ET.SubElement(body, f"{{{WS_NS}}}{method}")
    for name, value in params.items():
        param = ET.SubElement(call, name)
        if value is None:
            continue
        if isinstance(value, bool):
            param.text = "true" if value else "false"
        elif isinstance(value, datetime):
            param.text = value.strftime("%Y-%m-%d %H:%M:%S")
        elif isinstance(value, date):
            param.text = value.isoformat()
        else:
            param.text = str(value)
    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


def parse_response(method: str, payload: bytes | str) -> str:
    """Return the raw `result` of a SOAP response, raising on a reported error."""
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as exc:
        raise ECRFError(f"Malformed response from eCRF: {exc}", operation=method) from exc

    result: str | None = None
    error_msg: str | None = None
    error_code: str | None = None
    for node in root.iter():
        name = _local_name(node.tag)
        if name == "result":
            result = node.text or ""
        elif name == "ErrorMsg":
            error_msg = (node.text or "").strip()
        elif name == "ErrorCode":
            error_code = (node.text or "").strip()

    if error_msg:
        raise ECRFError(error_msg, operation=method, context={"remote_code": error_code})
    if result is None:
        raise ECRFError("Response from eCRF has no result", operation=method)
    return result


def _parse_document(method: str, result: str) -> ET.Element:
    try:
        return ET.fromstring(result)
    except ET.ParseError as exc:
        raise ECRFError(f"Unexpected result format: {exc}", operation=method) from exc


# ── XML → typed records ───────────────────────────────────────────────────


def _case_from_xml(node: ET.Element) -> RemoteCase:
    identifiers = {}
    for ident in node.findall("identifiers/identifier"):
        code = _text(ident, "code")
        if code:
            identifiers[code] = _text(ident, "value", "")
    return RemoteCase(
        case_id=_text(node, "ref", ""),
        birthdate=_text(node, "birthdate"),
        gender=_text(node, "gender", ""),
        identifiers=identifiers,
    )


def _admission_from_xml(node: ET.Element, case_id: str | None = None) -> RemoteAdmission:
    return RemoteAdmission(
        admission_id=_text(node, "ref", ""),
        case_id=_text(node, "case/ref", case_id or ""),
        subscription_id=_text(node, "subscription/ref", ""),
        program_code=_text(node, "subscription/program/code", ""),
    )


def _question_from_xml(node: ET.Element) -> Question:
    row = _text(node, "row")
    qtype = _text(node, "type", QuestionType.TEXT.value)
    value: Any = _text(node, "value")
    if qtype == QuestionType.VERTICAL_CHECK.value:
        value = _text(node, "option_id")
    return question_for(
        qtype,
        item_code=_text(node, "item_code", ""),
        value=value,
        array_ref=_text(node, "array_ref"),
        row=int(row) if row else None,
    )


def _form_from_xml(node: ET.Element) -> RemoteForm:
    questions = [
        _question_from_xml(q)
        for q in node.findall("questions/question")
        if _text(q, "type") != QuestionType.ARRAY.value
    ]
    return RemoteForm(
        form_id=_text(node, "ref", ""),
        form_code=_text(node, "code", ""),
        task_id=_text(node, "task/ref", ""),
        questions=questions,
    )


def _task_from_xml(node: ET.Element) -> RemoteTask:
    forms = [
        RemoteForm(form_id=_text(f, "ref", ""), form_code=_text(f, "code", ""), task_id=_text(node, "ref", ""))
        for f in node.findall("forms/form")
    ]
    return RemoteTask(
        task_id=_text(node, "ref", ""),
        task_code=_text(node, "code", ""),
        admission_id=_text(node, "admission/ref", ""),
        case_id=_text(node, "case/ref"),
        forms=forms,
    )


def _contact_xml(contact: ContactData) -> str:
    root = ET.Element("contact")
    if contact.birthdate:
        ET.SubElement(root, "birthdate").text = str(contact.birthdate)
    ET.SubElement(root, "gender").text = contact.gender or ""
    if contact.identifiers:
        idents = ET.SubElement(root, "identifiers")
        for code, value in contact.identifiers.items():
            ident = ET.SubElement(idents, "identifier")
            ET.SubElement(ident, "code").text = code
            ET.SubElement(ident, "value").text = value
    return ET.tostring(root, encoding="unicode")


def _questions_xml(questions: Sequence[Question]) -> str:
    root = ET.Element("questions")
    for question in questions:
        node = ET.SubElement(root, "question")
        for key, value in question.to_wire().items():
            if value is not None:
                ET.SubElement(node, key).text = str(value)
    return ET.tostring(root, encoding="unicode")


# ── Client ────────────────────────────────────────────────────────────────


class SoapECRFClient(ECRFClient):
    """httpx-based implementation of the eCRF client."""

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        super().__init__(user=self.settings.ecrf_service_user)
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self.session_token: str | None = None

    async def open(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.settings.ecrf_timeout_seconds,
                transport=self._transport,
                headers={"Content-Type": "text/xml; charset=utf-8"},
            )
        await self._session_init()

    async def close(self) -> None:
        if self._http is None:
            return
        try:
            if self.session_token:
                await self._call("session_close")
        except ECRFError as exc:
            self.logger.warning("ecrf.session_close_failed", error=str(exc))
        finally:
            await self._http.aclose()
            self._http = None
            self.session_token = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, method: str, body: bytes) -> httpx.Response:
        response = await self._http.post(self.settings.ecrf_ws_url, content=body, headers={"SOAPAction": method})
        response.raise_for_status()
        return response

    async def _session_init(self) -> None:
        body = build_envelope(
            "session_init",
            {
                "user": self.settings.ecrf_service_user,
                "password": self.settings.ecrf_service_password,
                "language": self.settings.ecrf_language,
                "current_date": datetime.utcnow(),
            },
        )
        try:
            response = await self._post("session_init", body)
        except httpx.HTTPError as exc:
            raise ECRFError(f"Unable to open eCRF session: {exc}", operation="session_init") from exc
        document = _parse_document("session_init", parse_response("session_init", response.content))
        self.session_token = _text(document, "token")
        if not self.session_token:
            raise ECRFError("eCRF session_init returned no token", operation="session_init")
        self.logger.info("ecrf.session_opened", url=self.settings.ecrf_ws_url)

    async def _call(self, method: str, **params: Any) -> str:
        if self._http is None or not self.session_token:
            raise ECRFError("eCRF session is not open", operation=method)
        body = build_envelope(method, {"session": self.session_token, **params})
        try:
            response = await self._http.post(self.settings.ecrf_ws_url, content=body, headers={"SOAPAction": method})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ECRFError(f"eCRF call failed: {exc}", operation=method) from exc
        return parse_response(method, response.content)

    async def _call_document(self, method: str, **params: Any) -> ET.Element:
        return _parse_document(method, await self._call(method, **params))

    # ── Directory ─────────────────────────────────────────────────────

    async def team_get(self, team_code: str) -> RemoteTeam:
        doc = await self._call_document("team_get", team=team_code)
        team_id = _text(doc, "ref")
        if not team_id:
            raise ECRFError(f"Team {team_code} not found", operation="team_get", code=ErrorCode.NOT_FOUND)
        if not team_id.isdigit():
            raise ECRFError(
                f"Team {team_code} has a non-numeric id '{team_id}'",
                operation="team_get",
                code=ErrorCode.INVALID_DATA_FORMAT,
            )
        return RemoteTeam(team_id=int(team_id), code=_text(doc, "code", team_code), name=_text(doc, "name", team_code))

    async def subscription_get(self, program_code: str, team_code: str) -> RemoteSubscription:
        doc = await self._call_document("subscription_get", program=program_code, team=team_code)
        return RemoteSubscription(
            subscription_id=_text(doc, "ref", ""),
            program_code=_text(doc, "program/code", program_code),
            team_code=_text(doc, "team/code", team_code),
        )

    # ── Cases & admissions ────────────────────────────────────────────

    async def case_search(self, reference: str) -> list[RemoteCase]:
        doc = await self._call_document("case_search", search_str=reference)
        return [_case_from_xml(node) for node in doc.iter("case")]

    async def case_insert(self, contact: ContactData) -> RemoteCase:
        doc = await self._call_document("case_insert", contact=_contact_xml(contact))
        return _case_from_xml(doc)

    async def case_set_contact(self, case_id: str, contact: ContactData) -> None:
        await self._call("case_set_contact", case=case_id, contact=_contact_xml(contact))

    async def case_admission_list(self, case_id: str) -> list[RemoteAdmission]:
        doc = await self._call_document("case_admission_list", case=case_id)
        return [_admission_from_xml(node, case_id) for node in doc.iter("admission")]

    async def admission_create(self, case_id: str, subscription_id: str, admission_date: datetime) -> RemoteAdmission:
        doc = await self._call_document(
            "admission_create", case=case_id, subscription=subscription_id, date=admission_date
        )
        admission = _admission_from_xml(doc, case_id)
        if not admission.subscription_id:
            admission.subscription_id = subscription_id
        return admission

    # ── Tasks & forms ─────────────────────────────────────────────────

    async def task_list(self, admission_id: str, task_code: str) -> list[RemoteTask]:
        doc = await self._call_document("admission_get_task_list", admission=admission_id, filter=task_code)
        return [_task_from_xml(node) for node in doc.iter("task")]

    async def task_insert_by_task_code(self, admission_id: str, task_code: str) -> str:
        task_id = (await self._call("task_insert_by_task_code", admission=admission_id, task_code=task_code)).strip()
        if not task_id:
            raise ECRFError(f"Task {task_code} could not be created", operation="task_insert_by_task_code")
        return task_id

    async def task_get(self, task_id: str) -> RemoteTask:
        return _task_from_xml(await self._call_document("task_get", task=task_id))

    async def task_delete(self, task_id: str) -> None:
        await self._call("task_delete", task=task_id)

    async def form_insert(self, task_id: str, form_code: str) -> str:
        form_id = (await self._call("form_insert", task=task_id, form_code=form_code)).strip()
        if not form_id:
            raise ECRFError(f"Form {form_code} could not be created", operation="form_insert")
        return form_id

    async def form_get_summary(self, form_id: str) -> RemoteForm:
        return _form_from_xml(await self._call_document("form_get_summary", form=form_id))

    async def form_set_all_answers(self, form_id: str, questions: Sequence[Question], close_form: bool) -> None:
        await self._call("form_set_all_answers", form=form_id, questions=_questions_xml(questions), closed=close_form)
