"""Slack notifications for finished PR simulations."""

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError


class SlackError(Exception):
    """Raised when a Slack notification cannot be delivered."""


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> str:
    """Post a message and return its timestamp. Blocking; call from a worker thread."""
    if not token:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = WebClient(token=token).chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"chat.postMessage to {channel} failed: {e.response['error']}") from e
    return response["ts"]


def format_simulation_notification(
    original_pr_url: str,
    succeeded: bool,
    pr_url: str | None = None,
    pr_title: str | None = None,
    error: str | None = None,
) -> list[dict]:
    """Format the outcome of a PR simulation as Slack blocks."""
    if succeeded:
        title = f"\n*{pr_title}*" if pr_title else ""
        link = f"\n<{pr_url}|View recreated PR>" if pr_url else ""
        text = f":white_check_mark: *PR Simulation Complete*{title}\nOriginal: <{original_pr_url}>{link}"
    else:
        text = (
            f":red_circle: *PR Simulation Failed*\nOriginal: <{original_pr_url}>\n"
            f"Error: `{error or 'unknown error'}`"
        )
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": text},
        }
    ]
