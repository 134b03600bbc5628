"""Slack Web API integration."""

from dataclasses import dataclass

from delivery_orchestrator.db.models import Job, JobRun


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(
            channel=channel,
            text=text,
            blocks=blocks,
        )
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_job_run_notification(job: Job, run: JobRun) -> list[dict]:
    """Format a finished job run as Slack blocks."""
    status_emoji = {
        "completed": ":white_check_mark:",
        "failed": ":red_circle:",
        "skipped": ":white_circle:",
    }
    emoji = status_emoji.get(run.status, ":grey_question:")

    lines = [f"{emoji} *Job {run.status}*: {job.name} (`{job.id}`, run #{run.id})"]
    if run.branch_name:
        lines.append(f"Branch: `{run.branch_name}`")
    if run.pr_url:
        lines.append(f"<{run.pr_url}|View Pull Request>")
    if run.error_message:
        lines.append(f"Error: {run.error_message}")

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(lines)},
        }
    ]
