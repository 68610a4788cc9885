"""
Prompt templates for the course chat assistant.

Keeping templates in a separate module makes them easy to iterate on
without touching generation logic.
"""

# ---------------------------------------------------------------------------
# Main system prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are an AI learning assistant helping students understand video course content.

You have access to transcripts from relevant video segments. When answering questions:
1. Use ONLY the information provided in the video transcripts below
2. Cite specific videos and timestamps when referencing information
3. If the answer isn't in the provided context, say so clearly
4. Be concise and helpful
5. Use markdown formatting for better readability

{custom_instructions}

---

{context}"""

# ---------------------------------------------------------------------------
# Context headers, one per output format
# ---------------------------------------------------------------------------

CONTEXT_HEADERS = {
    "markdown": (
        "# Relevant Video Content\n\n"
        "The following sections contain information from video transcripts "
        "relevant to the user's question:\n\n"
    ),
    "xml": "<context>\n<description>Relevant video content from transcripts</description>\n\n",
    "plain": "RELEVANT VIDEO CONTENT:\n\n",
}

CONTEXT_FOOTERS = {
    "markdown": "",
    "xml": "</context>\n",
    "plain": "",
}

NO_CONTEXT_SENTINEL = "No relevant information found."

# ---------------------------------------------------------------------------
# Conversation history block (placed ahead of the context)
# ---------------------------------------------------------------------------

HISTORY_HEADER = "## Recent Conversation\n\n"
HISTORY_TURN = "**{role}:** {content}"
HISTORY_FOOTER = "\n\n---\n\n"

# ---------------------------------------------------------------------------
# User-visible fallbacks
# ---------------------------------------------------------------------------

NO_RESULTS_RESPONSE = (
    "I couldn't find anything in the course videos that answers that question.\n\n"
    "Try rephrasing it, using terms the instructor uses, or asking about a "
    "specific lesson or topic."
)

UNAVAILABLE_RESPONSE = (
    "Search is temporarily unavailable. Please try again in a moment."
)

# ---------------------------------------------------------------------------
# Session title generation
# ---------------------------------------------------------------------------

TITLE_PROMPT = """\
Generate a concise 3-6 word title for a chat conversation that starts with this message:

"{message}"

Reply with the title only. No quotes, no trailing punctuation."""
