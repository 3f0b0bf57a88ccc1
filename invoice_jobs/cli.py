"""
Command-line client for the invoice job service.

Creates (or resumes) a job, follows it until it finishes, and asks for the
captcha solution on the terminal whenever the job needs one.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from invoice_jobs.config import settings
from invoice_jobs.jobs.client import JobLifecycleClient, JobObservation
from invoice_jobs.jobs.errors import CaptchaError, CreationError, JobFailed
from invoice_jobs.jobs.http_api import InvoiceJobsAPI
from invoice_jobs.jobs.models import CreateJobRequest
from invoice_jobs.logging_config import setup_logging

app = typer.Typer(
    name="invoice-jobs",
    help="Fetch invoices through the invoice job service",
    add_completion=False,
)
console = Console()


def build_api(base_url: str) -> InvoiceJobsAPI:
    return InvoiceJobsAPI(base_url)


def save_captcha(observation: JobObservation, path: Path) -> Path:
    challenge = observation.verification_challenge
    path.write_bytes(challenge.image_bytes() if challenge else b"")
    return path


async def follow_job(
    client: JobLifecycleClient, captcha_output: Path
) -> JobObservation:
    """Drive the job to a terminal phase, prompting for captchas on the way."""
    last_error = None

    def report(observation: JobObservation) -> None:
        nonlocal last_error
        if observation.fetch_error is not None and last_error is None:
            console.print(f"[yellow]Service unreachable, retrying:[/yellow] {observation.fetch_error}")
        last_error = observation.fetch_error

    unsubscribe = client.subscribe(report)
    try:
        while True:
            observation = await client.wait_until_settled()
            if not observation.is_awaiting_verification:
                return observation

            save_captcha(observation, captcha_output)
            console.print(f"Captcha saved to: [bold]{captcha_output}[/bold]")
            solution = await asyncio.to_thread(typer.prompt, "Enter captcha solution")
            try:
                await client.resolve_captcha(solution.strip())
            except CaptchaError as e:
                console.print(f"[red]Captcha rejected:[/red] {e}")
    finally:
        unsubscribe()


def print_outcome(observation: JobObservation) -> None:
    try:
        observation.raise_for_failure()
    except JobFailed as e:
        console.print(f"[red]Job {e.job_id} failed:[/red] {e.error}")
        raise typer.Exit(1)

    if not observation.is_completed:
        console.print(f"[yellow]Stopped following job {observation.job_id}[/yellow]")
        raise typer.Exit(1)

    console.print(f"[green]Job {observation.job_id} completed[/green]")
    console.print_json(json.dumps(observation.result, default=str))


async def _run(
    base_url: str,
    interval: float,
    captcha_output: Path,
    access_key: Optional[str] = None,
    job_id: Optional[str] = None,
) -> JobObservation:
    async with build_api(base_url) as api:
        async with JobLifecycleClient.from_api(api, poll_interval=interval) as client:
            if access_key is not None:
                handle = await client.create(CreateJobRequest(access_key=access_key))
                console.print(f"Created job [bold]{handle.job_id}[/bold]")
            else:
                await client.resume(job_id)
                console.print(f"Watching job [bold]{job_id}[/bold]")
            return await follow_job(client, captcha_output)


@app.command()
def fetch(
    access_key: str = typer.Argument(..., help="44-digit invoice access key"),
    base_url: str = typer.Option(settings.api_base_url, "--base-url", "-u", help="Job service URL"),
    interval: float = typer.Option(settings.poll_interval_seconds, "--interval", "-i", help="Poll interval in seconds"),
    captcha_output: Path = typer.Option(Path(settings.captcha_output), "--captcha-output", help="Where to save captcha images"),
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Logging level"),
):
    """Create a job for an access key and follow it to the end."""
    setup_logging(log_level)
    console.print(f"Fetching invoice: {access_key}")
    try:
        observation = asyncio.run(_run(base_url, interval, captcha_output, access_key=access_key))
    except CreationError as e:
        console.print(f"[red]Could not create job:[/red] {e}")
        raise typer.Exit(1)
    print_outcome(observation)


@app.command()
def watch(
    job_id: str = typer.Argument(..., help="Existing job identifier"),
    base_url: str = typer.Option(settings.api_base_url, "--base-url", "-u", help="Job service URL"),
    interval: float = typer.Option(settings.poll_interval_seconds, "--interval", "-i", help="Poll interval in seconds"),
    captcha_output: Path = typer.Option(Path(settings.captcha_output), "--captcha-output", help="Where to save captcha images"),
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Logging level"),
):
    """Follow a job that was created earlier."""
    setup_logging(log_level)
    observation = asyncio.run(_run(base_url, interval, captcha_output, job_id=job_id))
    print_outcome(observation)


if __name__ == "__main__":
    app()
