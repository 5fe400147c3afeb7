"""
Live per-patient alert mirror with at most one open store subscription.

Key patterns:
- Explicit subscription objects (open/close) feeding a single delivery channel
- Snapshot semantics: every push replaces the mirror, in store document order
- Race guard keyed by patient id and subscription epoch; superseded pushes are dropped
- Store push errors degrade to stale data, never to an exception
"""

import asyncio
from collections.abc import AsyncIterator
from typing import NamedTuple

from carewatch.config import BackendConfig
from carewatch.domain.models import Alert
from carewatch.services.contracts import AlertStore, DocumentSnapshot, Unsubscribe, logger

AlertSnapshot = tuple[Alert, ...]

_UNSET = object()


class _Delivery(NamedTuple):
    epoch: int
    patient_id: str | None
    alerts: AlertSnapshot | None  # None wakes the consumer after a close


def alerts_from_documents(patient_id: str, documents: list[DocumentSnapshot]) -> AlertSnapshot:
    """Build the ordered alert set for one push; repeated ids keep the first document."""
    seen: set[str] = set()
    alerts: list[Alert] = []
    for document in documents:
        if document.id in seen:
            continue
        seen.add(document.id)
        alerts.append(Alert(id=document.id, patient_id=patient_id, fields=dict(document.data)))
    return tuple(alerts)


class AlertSubscription:
    """One listener on patients/{patient_id}/alerts."""

    def __init__(
        self,
        store: AlertStore,
        patient_id: str,
        collection_path: str,
        epoch: int,
        channel: asyncio.Queue[_Delivery],
    ) -> None:
        self.store = store
        self.patient_id = patient_id
        self.collection_path = collection_path
        self.epoch = epoch
        self._channel = channel
        self._unsubscribe: Unsubscribe | None = None
        self._closed = False
        self.logger = logger.bind(component="alert_subscription", patient_id=patient_id)

    @property
    def is_open(self) -> bool:
        return self._unsubscribe is not None and not self._closed

    def open(self) -> None:
        if self._closed:
            raise RuntimeError("Cannot reopen a closed subscription")
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.store.listen(
            self.collection_path, self._on_snapshot, self._on_error
        )
        self.logger.info("alert_subscription_opened", path=self.collection_path)

    def close(self) -> None:
        """Stop delivery. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            except Exception as e:
                self.logger.exception("alert_unsubscribe_failed", error=str(e))
        self._channel.put_nowait(_Delivery(self.epoch, self.patient_id, None))
        self.logger.info("alert_subscription_closed")

    def _on_snapshot(self, documents: list[DocumentSnapshot]) -> None:
        if self._closed:
            return
        alerts = alerts_from_documents(self.patient_id, documents)
        self._channel.put_nowait(_Delivery(self.epoch, self.patient_id, alerts))

    def _on_error(self, error: Exception) -> None:
        # Consumers keep the last snapshot; there is no automatic retry.
        self.logger.warning("alert_subscription_push_failed", error=str(error))


class AlertSubscriptionManager:
    """
    Owns the single live alert subscription.

    Changing the patient id is the only cancellation trigger; there is no timeout.
    """

    def __init__(self, store: AlertStore, backend: BackendConfig | None = None) -> None:
        self.store = store
        self.backend = backend or BackendConfig()
        self.logger = logger.bind(component="alert_subscription_manager")
        self._live: AlertSubscription | None = None
        self._epoch = 0

    @property
    def live_patient_id(self) -> str | None:
        return self._live.patient_id if self._live is not None else None

    @property
    def live_subscription(self) -> AlertSubscription | None:
        return self._live

    def close(self) -> None:
        """Close the live subscription, if any. Idempotent."""
        self._epoch += 1
        live, self._live = self._live, None
        if live is not None:
            live.close()

    def _switch(self, patient_id: str | None, channel: asyncio.Queue[_Delivery]) -> int:
        """Close whatever is live, then open a subscription for `patient_id`."""
        self.close()
        if patient_id is None:
            return self._epoch

        subscription = AlertSubscription(
            self.store,
            patient_id,
            self.backend.alerts_path(patient_id),
            self._epoch,
            channel,
        )
        self._live = subscription
        subscription.open()
        return self._epoch

    def _is_current(self, delivery: _Delivery) -> bool:
        return delivery.epoch == self._epoch and delivery.patient_id == self.live_patient_id

    async def watch_alerts(self, patient_id: str | None) -> AsyncIterator[AlertSnapshot]:
        """
        Yield the alert set for `patient_id` on every push.

        With no patient a single empty set is yielded and nothing is opened.
        The sequence ends once another watch (or `close`) supersedes it.
        """
        if patient_id is None:
            self.close()
            yield ()
            return

        channel: asyncio.Queue[_Delivery] = asyncio.Queue()
        epoch = self._switch(patient_id, channel)
        try:
            while True:
                delivery = await channel.get()
                if epoch != self._epoch:
                    return
                if delivery.alerts is None or not self._is_current(delivery):
                    continue
                yield delivery.alerts
        finally:
            if epoch == self._epoch:
                self.close()

    async def follow(self, patient_ids: AsyncIterator[str | None]) -> AsyncIterator[AlertSnapshot]:
        """
        Re-subscribe on each distinct patient id from `patient_ids`.

        A None key yields one empty set. After a switch only pushes for the new
        key are emitted, never a leftover push for the previous one.
        """
        channel: asyncio.Queue[_Delivery] = asyncio.Queue()
        current: object = _UNSET

        async def pump() -> None:
            nonlocal current
            async for patient_id in patient_ids:
                if patient_id == current:
                    continue
                current = patient_id
                epoch = self._switch(patient_id, channel)
                self.logger.info("alert_key_changed", patient_id=patient_id)
                if patient_id is None:
                    channel.put_nowait(_Delivery(epoch, None, ()))

        pump_task = asyncio.create_task(pump())
        try:
            while True:
                delivery = await channel.get()
                if delivery.alerts is None or not self._is_current(delivery):
                    continue
                yield delivery.alerts
        finally:
            pump_task.cancel()
            try:
                await pump_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                self.logger.exception("alert_key_stream_failed", error=str(e))
            self.close()

    def dispose(self) -> None:
        self.close()
        self.logger.info("alert_subscription_manager_disposed")
