"""
Remote history store backed by a Google Apps Script web app over a spreadsheet.
GET returns previously processed consignments; POST appends accepted ones.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Sequence

import requests

from core.exceptions import HistoryStoreError
from core.interfaces import IHistoryStore
from core.models import AppendResult, ConsignmentRecord, ExtractionResult, HistoryFilter, ValidationStatus
from utils.normalize import parse_amount, parse_date_iso, parse_time_hhmm

logger = logging.getLogger(__name__)

SHEET_ACCEPTED = "Aceptada"
SHEET_REJECTED = "Rechazada"
DEFAULT_ACCOUNT_HOLDER = "Distribuidora La Paruma SAS"
# Convenio codes are short; bank accounts are 9+ digits.
CONVENIO_MAX_LEN = 8

# Old and new sheet layouts name the same column differently; first present wins.
_ID_COLUMNS = ("ID Transacción", "Número Operación", "Número Referencia", "numeroReferencia")
_REFERENCE_COLUMNS = ("Referencia Cliente", "Número Referencia", "numeroReferencia")
_ACCOUNT_COLUMNS = ("Cuenta/Convenio", "Cuenta Destino", "Convenio", "cuentaDestino")
_DATE_COLUMNS = ("Fecha", "Fecha Transacción", "fechaTransaccion")
_TIME_COLUMNS = ("Hora", "hora")
_AMOUNT_COLUMNS = ("Valor", "valor")
_STATUS_COLUMNS = ("Estado", "estado")
_BANK_COLUMNS = ("Banco", "banco")
_IMAGE_COLUMNS = ("URL Imagen", "urlImagen")
_REASON_COLUMNS = ("Motivo Rechazo", "motivoRechazo")
_PAYMENT_TYPE_COLUMNS = ("Tipo Pago", "tipoPago")


def status_to_sheet(status: ValidationStatus) -> str:
    return SHEET_ACCEPTED if status is ValidationStatus.VALID else SHEET_REJECTED


def sheet_to_status(text: Any) -> ValidationStatus:
    """Sheet status text -> ValidationStatus. Missing column means accepted."""
    s = str(text or "").strip().lower()
    if not s or s in ("aceptada", "valid", "ok"):
        return ValidationStatus.VALID
    if "duplicado" in s:
        return ValidationStatus.DUPLICATE
    if "calidad" in s:
        return ValidationStatus.LOW_QUALITY
    # "cuenta", "no autorizada" and bare "Rechazada" rows
    return ValidationStatus.INVALID_ACCOUNT


def _first(row: dict[str, Any], columns: Sequence[str]) -> Any:
    for col in columns:
        value = row.get(col)
        if value not in (None, ""):
            return value
    return None


def _row_to_record(row: dict[str, Any], index: int) -> ConsignmentRecord:
    identifier = _first(row, _ID_COLUMNS)
    reference = _first(row, _REFERENCE_COLUMNS)
    status_text = _first(row, _STATUS_COLUMNS) or SHEET_ACCEPTED
    data = ExtractionResult(
        bank_name=str(_first(row, _BANK_COLUMNS) or "Desconocido"),
        account_or_convenio=str(_first(row, _ACCOUNT_COLUMNS) or ""),
        amount=parse_amount(_first(row, _AMOUNT_COLUMNS)),
        date=parse_date_iso(_first(row, _DATE_COLUMNS)),
        time=parse_time_hhmm(_first(row, _TIME_COLUMNS)),
        transaction_id=str(identifier) if identifier is not None else None,
        payment_reference=str(reference) if reference is not None else None,
        raw_text=f"Historial: {_first(row, _PAYMENT_TYPE_COLUMNS) or ''}",
        image_quality_score=100,
        is_readable=True,
        used_provider="history",
    )
    return ConsignmentRecord(
        id=f"sheet-{index}",
        data=data,
        status=sheet_to_status(status_text),
        status_message=str(_first(row, _REASON_COLUMNS) or status_text),
        image_ref=str(_first(row, _IMAGE_COLUMNS) or ""),
    )


def record_to_row(record: ConsignmentRecord, account_holder: str = DEFAULT_ACCOUNT_HOLDER) -> dict[str, Any]:
    """ConsignmentRecord -> sheet row payload understood by the Apps Script."""
    d = record.data
    account = d.account_or_convenio or ""
    is_convenio = bool(account) and len(account) <= CONVENIO_MAX_LEN
    return {
        "estado": status_to_sheet(record.status),
        "banco": d.bank_name or "",
        "tipoPago": "recaudo" if is_convenio else "transferencia",
        "valor": d.amount,
        "fechaTransaccion": d.date or "",
        "hora": d.time or "",
        "numeroReferencia": d.primary_identifier or d.payment_reference or "",
        "referenciaCliente": d.payment_reference or "",
        "cuentaDestino": account,
        "titularCuentaDestino": account_holder,
        "ciudad": d.city or "",
        "urlImagen": record.image_ref,
        "fechaProcesamiento": datetime.fromtimestamp(record.created_at).isoformat(timespec="seconds")
        if record.created_at
        else "",
        "motivoRechazo": "" if record.status is ValidationStatus.VALID else record.status_message,
        "descripcion": (d.raw_text[:100] + "...") if d.raw_text else "",
        "numeroOperacion": d.operation_number or d.transaction_id or "",
        "convenio": account if is_convenio else "",
    }


class SheetsHistoryStore(IHistoryStore):
    """Apps Script web app client. No custom headers on GET; POST body is JSON sent as text/plain."""

    def __init__(
        self,
        script_url: str,
        timeout_sec: int = 30,
        account_holder: str = DEFAULT_ACCOUNT_HOLDER,
        session: requests.Session | None = None,
    ) -> None:
        self._url = (script_url or "").strip()
        self._timeout = timeout_sec
        self._account_holder = account_holder
        self._http = session or requests.Session()

    @staticmethod
    def _params(query: HistoryFilter) -> dict[str, str]:
        params: dict[str, str] = {}
        if query.limit:
            params["limit"] = str(query.limit)
        if query.estado:
            params["estado"] = query.estado
        if query.banco:
            params["banco"] = query.banco
        if query.fecha_inicio:
            params["fechaInicio"] = query.fecha_inicio
        if query.fecha_fin:
            params["fechaFin"] = query.fecha_fin
        return params

    def fetch_history(self, query: HistoryFilter | None = None) -> list[ConsignmentRecord]:
        if not self._url:
            return []
        query = query or HistoryFilter()
        try:
            resp = self._http.get(self._url, params=self._params(query), timeout=self._timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise HistoryStoreError(f"History fetch failed: {e}") from e
        try:
            payload = resp.json()
        except ValueError as e:
            raise HistoryStoreError("History response is not valid JSON") from e
        if not isinstance(payload, dict) or payload.get("status") != "success":
            message = payload.get("message") if isinstance(payload, dict) else None
            raise HistoryStoreError(f"History store error: {message or 'unexpected payload'}")
        rows = payload.get("data")
        if not isinstance(rows, list):
            return []
        records = [_row_to_record(row, i) for i, row in enumerate(rows) if isinstance(row, dict)]
        logger.info("Fetched %s history record(s)", len(records))
        return records

    def append_records(self, records: Sequence[ConsignmentRecord]) -> AppendResult:
        if not self._url:
            return AppendResult(False, "URL del Script no configurada")
        accepted = [r for r in records if r.status is ValidationStatus.VALID]
        skipped = len(records) - len(accepted)
        if skipped:
            logger.info("Not sending %s non-accepted record(s) to history", skipped)
        if not accepted:
            return AppendResult(True, "Sin registros aceptados para enviar.")
        body = [record_to_row(r, self._account_holder) for r in accepted]
        try:
            resp = self._http.post(
                self._url,
                data=json.dumps(body, ensure_ascii=False).encode("utf-8"),
                headers={"Content-Type": "text/plain; charset=utf-8"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("History append failed: %s", e)
            return AppendResult(False, f"Error de conexión con el script: {e}")
        try:
            payload = resp.json()
        except ValueError:
            logger.debug("History append response was not JSON: %s", (resp.text or "")[:200])
            return AppendResult(True, "Datos enviados correctamente.")
        if isinstance(payload, dict) and payload.get("status") == "error":
            return AppendResult(False, f"Error del Script: {payload.get('message')}")
        message = payload.get("message") if isinstance(payload, dict) else None
        return AppendResult(True, message or "Sincronización completada.")
