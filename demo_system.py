"""
Complete system walkthrough on the in-memory adapters.

This script exercises:
1. Configuration loading and validation
2. Sign-in, profile resolution and route gates
3. Live alert feeds for patients and caretakers
4. Profile-integrity failures forcing a sign-out
5. Audit trail attribution and store failures

Run with: uv run python demo_system.py
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.memory.documents import InMemoryDocumentStore
from adapters.memory.identity import InMemoryIdentityProvider
from carewatch.config import get_config, print_config_summary, validate_config
from carewatch.domain.models import Resolved
from carewatch.services.runtime import CareWatchRuntime

console = Console()

ROUTES = ["/", "/login", "/settings", "/dashboard/patient", "/dashboard/medical"]


async def _settle() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


async def build_runtime() -> tuple[CareWatchRuntime, InMemoryIdentityProvider, InMemoryDocumentStore]:
    """Seed accounts, profiles and alerts for the walkthrough."""
    provider = InMemoryIdentityProvider()
    documents = InMemoryDocumentStore()

    provider.add_account("pat@carewatch.dev", "pat-secret", identity_id="patient-1")
    provider.add_account("care@carewatch.dev", "care-secret", identity_id="caretaker-1")
    provider.add_account("orphan@carewatch.dev", "orphan-secret", identity_id="orphan-1")

    await documents.set_document(
        "users/patient-1",
        {
            "role": "patient",
            "email": "pat@carewatch.dev",
            "firstName": "Pat",
            "assignedCaretakerId": "caretaker-1",
        },
    )
    await documents.set_document(
        "users/caretaker-1", {"role": "caretaker", "email": "care@carewatch.dev"}
    )
    await documents.set_document(
        "patients/patient-1/alerts/a1",
        {"title": "High blood pressure", "severity": "high", "message": "152/98 mmHg"},
    )

    runtime = CareWatchRuntime(provider, documents, documents, documents, get_config())
    return runtime, provider, documents


def _gate_table(runtime: CareWatchRuntime, title: str) -> Table:
    table = Table(title=title)
    table.add_column("Route", style="cyan")
    table.add_column("Decision", style="magenta")
    table.add_column("Target", style="yellow")
    for route in ROUTES:
        decision = runtime.navigate(route)
        table.add_row(route, decision.kind, getattr(decision, "target", ""))
    return table


async def test_configuration() -> bool:
    """Load and validate configuration."""

    console.print(Panel("Configuration", style="blue"))

    try:
        validate_config()
        print_config_summary()
        console.print("✅ Configuration loaded successfully", style="green")
        return True
    except Exception as e:
        console.print(f"❌ Configuration failed: {e}", style="red")
        return False


async def test_patient_journey() -> bool:
    """Patient signs in, sees their alerts and signs out."""

    console.print(Panel("Patient Journey", style="blue"))

    runtime, _, documents = await build_runtime()
    async with runtime.running():
        await runtime.wait_until_settled()
        console.print(_gate_table(runtime, "Gates while signed out"))

        result = await runtime.sign_in("pat@carewatch.dev", "pat-secret")
        if result.is_err():
            console.print(f"❌ Sign-in failed: {result.unwrap_err().message}", style="red")
            return False
        await _settle()
        console.print(_gate_table(runtime, "Gates for the patient"))

        feed = runtime.watch_patient_alerts()
        alerts = await asyncio.wait_for(anext(feed), timeout=1)
        for alert in alerts:
            console.print(f"🚨 {alert.severity}: {alert.title} ({alert.message})", style="red")
            runtime.view_alert(alert)

        await documents.set_document(
            "patients/patient-1/alerts/a2", {"title": "Low oxygen", "severity": "medium"}
        )
        alerts = await asyncio.wait_for(anext(feed), timeout=1)
        console.print(f"Live alert set now holds {len(alerts)} alerts", style="yellow")

        await runtime.sign_out()
        alerts = await asyncio.wait_for(anext(feed), timeout=1)
        await feed.aclose()
        console.print(f"After sign-out the feed holds {len(alerts)} alerts", style="yellow")

    table = Table(title="Audit Trail")
    table.add_column("Action", style="cyan")
    table.add_column("User", style="magenta")
    table.add_column("Details", style="white")
    for entry in documents.documents("auditLogs"):
        table.add_row(entry.data["action"], entry.data["userId"], str(entry.data["details"]))
    console.print(table)
    return True


async def test_caretaker_journey() -> bool:
    """Caretaker picks a patient and follows that patient's feed."""

    console.print(Panel("Caretaker Journey", style="blue"))

    runtime, _, _ = await build_runtime()
    async with runtime.running():
        await runtime.sign_in("care@carewatch.dev", "care-secret")
        await _settle()

        feed = runtime.watch_patient_alerts()
        before = await asyncio.wait_for(anext(feed), timeout=1)
        runtime.select_patient("patient-1")
        after = await asyncio.wait_for(anext(feed), timeout=1)
        await feed.aclose()

    console.print(f"Before selecting a patient: {len(before)} alerts", style="yellow")
    console.print(f"Following patient-1: {[alert.title for alert in after]}", style="green")
    return len(before) == 0 and len(after) == 1


async def test_integrity_failure() -> bool:
    """An account without a profile is signed out instead of half-authenticated."""

    console.print(Panel("Profile Integrity", style="blue"))

    runtime, provider, _ = await build_runtime()
    async with runtime.running():
        await runtime.sign_in("orphan@carewatch.dev", "orphan-secret")
        await _settle()
        state = runtime.state

    console.print(f"Session state: {state.kind}", style="yellow")
    console.print(f"Provider sign-outs: {provider.sign_out_calls}", style="yellow")
    return not isinstance(state, Resolved) and provider.sign_out_calls == 1


async def test_error_handling() -> bool:
    """Bad credentials and a failing audit store never surface raw errors."""

    console.print(Panel("Error Handling", style="blue"))

    runtime, _, documents = await build_runtime()
    async with runtime.running():
        result = await runtime.sign_in("pat@carewatch.dev", "wrong-password")
        console.print(f"Wrong password: {result.unwrap_err().message}", style="yellow")

        documents.write_error = ConnectionError("audit store offline")
        await runtime.sign_in("pat@carewatch.dev", "pat-secret")
        await _settle()
        console.print("Login completed with the audit store offline", style="green")
        documents.write_error = None

    return isinstance(runtime.state, Resolved) and documents.documents("auditLogs") == []


async def run_all_tests() -> None:
    """Run the whole walkthrough."""

    console.print(Panel("CareWatch - System Walkthrough", style="bold blue"))

    tests = [
        ("Configuration", test_configuration),
        ("Patient Journey", test_patient_journey),
        ("Caretaker Journey", test_caretaker_journey),
        ("Profile Integrity", test_integrity_failure),
        ("Error Handling", test_error_handling),
    ]

    results = []

    for test_name, test_func in tests:
        console.print(f"\n{'=' * 60}")
        try:
            result = await test_func()
            results.append((test_name, result))
        except Exception as e:
            console.print(f"❌ {test_name} failed with exception: {e}", style="red")
            results.append((test_name, False))

    console.print(f"\n{'=' * 60}")
    summary_table = Table(title="Results")
    summary_table.add_column("Scenario", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for test_name, result in results:
        if result:
            summary_table.add_row(test_name, "✅ PASSED")
            passed += 1
        else:
            summary_table.add_row(test_name, "❌ FAILED")

    console.print(summary_table)
    console.print(f"\nResults: {passed}/{len(results)} scenarios passed")


if __name__ == "__main__":
    try:
        asyncio.run(run_all_tests())
    except KeyboardInterrupt:
        console.print("\nStopped by user", style="yellow")
