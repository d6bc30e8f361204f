"""The compromised-state latch and the standby reminder loop.

:class:`CompromisedState` is a one-way flag. Once a security incident
activates it, nothing in the package clears it: the cause needs a human to
look at the account. One instance is shared by every orchestrator of a
process, which is how an incident on one account halts all the others.

Setting the flag is a plain attribute assignment. Two detectors racing to
activate it may both report the incident; that duplicate is accepted.

:class:`StandbyController` performs the side effects of engaging standby
(alert, reminder) and can hold the process open for manual review.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from authpilot import output
from authpilot.collaborators import IncidentNotifier, NullNotifier
from authpilot.models import SecurityIncident
from authpilot.pacing import SleepFunc

REMINDER_INTERVAL = 300.0


class CompromisedState:
    """Process-wide security latch: ``inactive`` until the first incident."""

    def __init__(self) -> None:
        self.active = False
        self.reason: Optional[str] = None
        self.email: Optional[str] = None
        self.incident: Optional[SecurityIncident] = None

    def activate(self, reason: str, email: Optional[str] = None,
                 incident: Optional[SecurityIncident] = None) -> bool:
        """Latch the state.

        Returns:
            ``True`` if this call performed the transition, ``False`` if the
            state was already active (the first reason is kept).
        """
        if self.active:
            return False
        self.active = True
        self.reason = reason
        self.email = email
        self.incident = incident
        return True

    def __repr__(self) -> str:
        if not self.active:
            return "CompromisedState(inactive)"
        return f"CompromisedState(active, reason={self.reason!r})"


class StandbyController:
    """Engages standby and keeps reminding the operator about it.

    Args:
        state: The shared latch.
        notifier: Receives one alert per transition into standby.
        interval: Seconds between reminder log lines.
        sleep: Coroutine used to wait between reminders.
    """

    def __init__(
        self,
        state: CompromisedState,
        notifier: Optional[IncidentNotifier] = None,
        interval: float = REMINDER_INTERVAL,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self.state = state
        self._notifier = notifier or NullNotifier()
        self._interval = interval
        self._sleep = sleep or asyncio.sleep
        self._reminder: Optional[asyncio.Task[None]] = None

    def latch(self, incident: SecurityIncident) -> bool:
        """Activate the shared state for *incident* without any other side effect.

        Returns:
            ``True`` if this call performed the transition.
        """
        return self.state.activate(incident.kind.value, incident.account, incident)

    async def engage(self, incident: SecurityIncident) -> bool:
        """Latch the state for *incident*, alert, and start the reminder.

        Returns:
            ``True`` if standby was entered by this call.
        """
        entered = self.latch(incident)
        if not entered:
            output.log("SECURITY", f"Standby already active ({self.state.reason}); not re-alerting", "debug")
            return False
        await self.announce(incident)
        return True

    async def announce(self, incident: SecurityIncident) -> None:
        """Log the standby banner, send the alert and start the reminder."""
        output.log(
            "SECURITY",
            "Global standby engaged: no further accounts will be processed until this is reviewed.",
            "warn",
        )
        await self._notifier.send_incident_alert(incident, incident.severity)
        self.start_reminder()

    def start_reminder(self) -> Optional[asyncio.Task[None]]:
        """Start the reminder task if it is not running. Requires a running loop."""
        if self._reminder is not None and not self._reminder.done():
            return self._reminder
        try:
            self._reminder = asyncio.get_running_loop().create_task(self._remind())
        except RuntimeError:
            return None
        return self._reminder

    async def _remind(self) -> None:
        while True:
            await self._sleep(self._interval)
            output.log(
                "SECURITY",
                f"Still in standby ({self.state.reason or 'security-issue'}): "
                "session held open for manual review. Press CTRL+C to exit.",
                "warn",
            )

    async def hold(self) -> None:
        """Block until cancelled, keeping the reminder alive."""
        task = self.start_reminder()
        if task is None:
            return
        await task

    async def stop(self) -> None:
        """Cancel the reminder task."""
        if self._reminder is None:
            return
        self._reminder.cancel()
        await asyncio.gather(self._reminder, return_exceptions=True)
        self._reminder = None
