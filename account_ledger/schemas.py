"""
Pydantic schemas for API requests and responses
"""

from datetime import datetime, timezone
from typing import Any, Dict, Literal
from pydantic import BaseModel, Field

from .accounts import MAX_AMOUNT, MAX_DESCRIPTION_LENGTH, Transaction, TransactionKind
from .ledger import Statement, TransactionAccepted


def format_timestamp(moment: datetime) -> str:
    """Render as yyyy-MM-ddTHH:mm:ss.SSSZ in UTC"""
    moment = moment.astimezone(timezone.utc)
    return f"{moment.strftime('%Y-%m-%dT%H:%M:%S')}.{moment.microsecond // 1000:03d}Z"


class TransactionRequest(BaseModel):
    value: int = Field(..., alias="valor", ge=0, le=MAX_AMOUNT, strict=True, description="Amount in cents")
    kind: Literal["c", "d"] = Field(..., alias="tipo", description="c = credit, d = debit")
    description: str = Field(
        ..., alias="descricao", min_length=1, max_length=MAX_DESCRIPTION_LENGTH
    )

    @property
    def transaction_kind(self) -> TransactionKind:
        return TransactionKind(self.kind)


def transaction_response(result: TransactionAccepted) -> Dict[str, Any]:
    return {"limite": result.limit, "saldo": result.balance}


def transaction_entry(transaction: Transaction) -> Dict[str, Any]:
    return {
        "valor": transaction.amount,
        "tipo": transaction.kind.value,
        "descricao": transaction.description,
        "realizada_em": format_timestamp(transaction.occurred_at)
    }


def statement_response(statement: Statement) -> Dict[str, Any]:
    return {
        "saldo": {
            "total": statement.balance,
            "data_extrato": format_timestamp(statement.statement_date),
            "limite": statement.limit
        },
        "ultimas_transacoes": [transaction_entry(t) for t in statement.last_transactions]
    }
