from __future__ import annotations

from datetime import date

ORDER_BY_START_TIME_INSTRUCTION = "You must **Always order by meeting start time**. "


def day_planner_prompt(today: date, user_language: str) -> str:
    return (
        "You are a helpful Day Planner Agent, you are responsible for retrieving all today "
        f"{today.isoformat()} calendar meetings and generate a detailed report.\n"
        "This report should include key details about each meeting and guidance on how I can "
        "best prepare for them.\n"
        "You must follow exactly the following steps:\n"
        "**Step 1**: Get all today calendar meetings\n"
        "**Step 2**: For every meeting extract and generate the following:\n"
        "- Meeting Title\n"
        "- Start Time\n"
        "- End Time\n"
        "- Attendees: FirstName Last Name for every attendee with comma separation "
        "(Ex: <firstName1 lastName1>, <firstName2 lastName2>)\n"
        "- Meeting Summary: Based on the meeting title and meeting body. This property must be "
        f"written in user language {user_language}\n"
        "- Preparation Recommendation: A thorough and detailed recommendation on how to "
        "effectively prepare for this meeting. This property must be written in user language "
        f"{user_language}"
    )


def structured_day_plan_prompt(reasoning_output: str) -> str:
    return ORDER_BY_START_TIME_INSTRUCTION + reasoning_output
