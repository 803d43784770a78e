"""Utility functions for the application."""

from __future__ import annotations

import smtplib
from typing import TYPE_CHECKING, Any, Callable, Iterable

from firebase_admin import firestore
from flask import current_app, render_template
from flask_mail import Message

from .core.constants import FIRESTORE_BATCH_LIMIT
from .extensions import mail

if TYPE_CHECKING:
    from google.cloud.firestore_v1.batch import WriteBatch
    from google.cloud.firestore_v1.client import Client
    from google.cloud.firestore_v1.document import DocumentReference


class EmailError(Exception):
    """Raised when an outgoing e-mail cannot be delivered."""


def send_email(to, subject, template, **kwargs):
    """Render an e-mail template and send it to one recipient.

    Raises:
        EmailError: If the mail server rejects the message.
    """
    msg = Message(
        subject,
        recipients=[to],
        html=render_template(template, **kwargs),
        sender=current_app.config["MAIL_DEFAULT_SENDER"],
    )
    try:
        mail.send(msg)
    except smtplib.SMTPAuthenticationError as e:
        raise EmailError(
            f"SMTP authentication failed ({e.smtp_code}). "
            "Check MAIL_USERNAME and MAIL_PASSWORD."
        ) from e
    except Exception as e:
        raise EmailError(f"Failed to send email: {e}") from e


def run_in_transaction(db: Client, fn: Callable[..., Any], *args: Any) -> Any:
    """Call fn(transaction, *args) inside a Firestore transaction.

    Reads must pass ``transaction=`` and writes must go through the
    transaction. Firestore re-runs fn when a document it read changed
    before the commit, so fn must not have side effects of its own.
    """
    return firestore.transactional(fn)(db.transaction(), *args)


def commit_in_batches(
    db: Client,
    refs: Iterable[DocumentReference],
    apply: Callable[[WriteBatch, DocumentReference], None],
) -> int:
    """Queue one write per document and commit every FIRESTORE_BATCH_LIMIT.

    Each commit is atomic, so a failure leaves whole chunks either written
    or untouched. Returns the number of writes committed.
    """
    batch = db.batch()
    operation_count = 0
    committed = 0
    for ref in refs:
        apply(batch, ref)
        operation_count += 1
        if operation_count >= FIRESTORE_BATCH_LIMIT:
            batch.commit()
            committed += operation_count
            batch = db.batch()
            operation_count = 0
    if operation_count > 0:
        batch.commit()
        committed += operation_count
    return committed
