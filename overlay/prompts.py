BASE_SYSTEM_PROMPT = """Use Markdown for formatting.
Structure the answer with headings.
Put code in Markdown code blocks and always tag each block with its language.
Do not write commentary inside or between code blocks.
Do not use LaTeX; write formulas as plain text.
Use bold text for emphasis.
Give a short explanation first, then the solution."""

CUSTOM_INSTRUCTIONS_SEPARATOR = "--- Additional instructions from the user ---"


def build_system_prompt(custom_instructions: str = "") -> str:
    custom = (custom_instructions or "").strip()
    if not custom:
        return BASE_SYSTEM_PROMPT
    return f"{BASE_SYSTEM_PROMPT}\n\n{CUSTOM_INSTRUCTIONS_SEPARATOR}\n{custom}"


def build_suggestion_prompt(context: str, recent_topics: list[str], *, max_items: int = 2) -> str:
    recent = ", ".join(recent_topics) if recent_topics else "(none)"
    return f"""You are a smart assistant listening to a live conversation. Help ONLY when it is genuinely useful.

Generate suggestions ONLY for:
- Explicit questions or quiz questions
- Technical discussions that need facts or reference information
- Topics where the listener may actually need help

Do NOT create suggestions for:
- Casual chatter or small talk
- Generic phrases without a concrete question
- Context that was already covered earlier
- Incomplete thoughts or fragments of phrases

OUTPUT AS JSON:
{{
    "suggestions": [
        {{
            "topic": "Short topic name (2-4 words)",
            "answer": "Short but complete answer (2-3 sentences at most)",
            "confidence": 0.85
        }}
    ]
}}

Rules:
1. At most {max_items} suggestions at a time (only the most important and relevant)
2. "topic" must be unique and specific (2-4 words)
3. "answer" must be brief (50-100 words at most)
4. "confidence" is how relevant you are (0.0-1.0); only generate items at >= 0.7
5. Merge similar topics into one
6. Do NOT repeat topics from the list of previously discussed topics
7. If nothing qualifies, return {{"suggestions": []}}

Conversation context:
{context}

Previously discussed topics (do NOT repeat them):
{recent}
"""
