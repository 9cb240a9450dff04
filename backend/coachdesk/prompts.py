"""Prompt text for the post-session synthesis stages and related coach tools."""

from __future__ import annotations

from typing import Iterable, Sequence


DEFAULT_SYSTEM_INSTRUCTIONS = """
You are an expert coaching assistant working for a professional coach.

Non-negotiable rules:
- Only use what is actually present in the transcript or the context you are given. Never invent quotes, events, or commitments.
- Keep the client's dignity and confidentiality in mind. Do not diagnose, and do not give medical, legal, or financial advice.
- When asked for JSON, respond with exactly one JSON value and nothing else: no markdown, no code fences, no commentary.
- When asked for prose, write warm, plain, human language with no markdown formatting.
""".strip()

PRIORITIES = ("high", "medium", "low")


def _goal_line(goals: Iterable[object] | None) -> str:
    cleaned = [str(goal).strip() for goal in goals or () if goal is not None and str(goal).strip()]
    return ", ".join(cleaned) if cleaned else "Not specified"


def first_name(full_name: str | None) -> str:
    parts = (full_name or "").split()
    return parts[0] if parts else "there"


def build_summary_prompt(
    transcript: str,
    *,
    client_name: str,
    coaching_type: str | None,
    goals: Sequence[str] | None,
    session_number: int,
) -> str:
    return f"""Analyze this coaching session transcript and generate a comprehensive yet concise session summary.

CLIENT CONTEXT:
- Name: {client_name}
- Coaching Type: {coaching_type or "general"}
- Goals: {_goal_line(goals)}
- Session Number: {session_number}

TRANSCRIPT:
{transcript}

Generate a JSON response with this exact structure:
{{
  "summary": "A 150-250 word narrative summary of the session in warm, professional language. Written in third person.",
  "summary_structured": {{
    "overview": "2-3 sentence high-level summary",
    "key_themes": ["theme1", "theme2", "theme3"],
    "breakthroughs": ["any breakthrough moments or realizations"],
    "concerns": ["any concerns or risk flags noticed"],
    "coaching_techniques_used": ["techniques the coach employed"]
  }},
  "mood_score": 75,
  "energy_score": 80,
  "engagement_score": 85,
  "breakthrough_flagged": false
}}

Score guidelines:
- mood_score: integer 1-100, the client's emotional state (50=neutral, 80+=positive, 30-=concerning)
- energy_score: integer 1-100, the client's energy and motivation level
- engagement_score: integer 1-100, how engaged and participatory the client was
- breakthrough_flagged: true only if a genuine "aha moment" or significant shift occurred

Respond ONLY with valid JSON."""


def build_action_items_prompt(
    transcript: str,
    *,
    client_name: str,
    goals: Sequence[str] | None,
) -> str:
    return f"""Extract all action items, commitments, and homework from this coaching session transcript.

CLIENT: {client_name}
GOALS: {_goal_line(goals)}

TRANSCRIPT:
{transcript}

Generate a JSON array of action items:
[
  {{
    "task": "Clear, specific description of what the client committed to",
    "priority": "high|medium|low",
    "due_date_suggestion": "relative timeframe like 'within 1 week' or 'by next session' or 'ongoing'"
  }}
]

Rules:
- Extract ONLY commitments the client actually made or the coach explicitly assigned
- Be specific: "Journal daily" not "Do journaling"
- Include any exercises, reflections, or practices discussed
- Typically 2-6 action items per session
- high = directly tied to the primary goal, medium = supportive, low = nice-to-have

Respond ONLY with a valid JSON array."""


def build_followup_prompt(
    transcript: str,
    *,
    client_name: str,
    summary: str,
    action_items: Sequence[dict],
) -> str:
    action_list = "\n".join(
        f"{index}. {item.get('task', '')}" for index, item in enumerate(action_items, start=1)
    )
    return f"""You are writing a follow-up email on behalf of a coach to their client after a coaching session. The email should sound like it comes from the coach personally: warm, encouraging, and referencing specific moments from the session.

CLIENT: {client_name} (first name: {first_name(client_name)})

SESSION SUMMARY:
{summary}

ACTION ITEMS:
{action_list or "None agreed this session"}

TRANSCRIPT:
{transcript}

Write the email body (no subject line, no greeting; those are handled separately). The email should:
1. Open with a warm acknowledgment of a specific moment or achievement from the session
2. Briefly recap 1-2 key insights (don't repeat the whole summary)
3. List the action items naturally in the flow
4. End with encouragement and a forward-looking statement
5. Be 150-300 words
6. Reference at least one specific thing the client said or felt

Respond with ONLY the email body text. No subject line, no "Dear X", no signature."""


def build_prep_brief_prompt(
    *,
    client_name: str,
    coaching_type: str | None,
    goals: Sequence[str] | None,
    recent_sessions: Sequence[dict],
    open_action_items: Sequence[dict],
) -> str:
    sessions_context = "\n\n".join(
        f"Session {item['session_number']} ({item['date']}): {item['summary']}\n"
        f"Action items: {', '.join(item['action_items']) or 'none'}"
        for item in recent_sessions
    )
    actions_context = "\n".join(
        f"- {item['task']} [{'DONE' if item['completed'] else 'OPEN'}]"
        + (f" (due: {item['due_date']})" if item.get("due_date") else "")
        for item in open_action_items
    )
    return f"""You are preparing a pre-session brief for a coach. This brief helps them walk into the session fully prepared.

CLIENT: {client_name}
COACHING TYPE: {coaching_type or "general"}
GOALS: {_goal_line(goals)}

RECENT SESSIONS:
{sessions_context or "No previous sessions"}

OPEN ACTION ITEMS:
{actions_context or "None"}

Generate a concise prep brief (150-200 words) that includes:
1. Where you left off (last session recap in 1-2 sentences)
2. What to follow up on (open action items, especially overdue ones)
3. Suggested talking points or questions
4. Any patterns or trends you notice
5. Risk flags, if any (missed actions, declining mood, etc.)

Write in direct second person ("Your client...", "Consider asking...").

Respond with ONLY the brief text."""


def build_nudge_prompt(
    *,
    client_name: str,
    task: str,
    due_date: str | None,
    days_since_session: int,
) -> str:
    return f"""Write a brief, encouraging nudge message to a coaching client about an action item they committed to.

CLIENT FIRST NAME: {first_name(client_name)}
ACTION ITEM: {task}
DUE: {due_date or "no specific date"}
DAYS SINCE SESSION: {days_since_session}

Write a 2-3 sentence message that:
- Feels personal and encouraging, not nagging
- References the specific action item
- Ends with a light, motivating note
- Sounds like a supportive text from their coach

Respond with ONLY the message text."""
