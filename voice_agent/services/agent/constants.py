"""Spoken lines and keyword lists for the turn-taking flow."""

# Caller phrases that end the call. Matched case-insensitively on word boundaries.
END_OF_CALL_KEYWORDS = [
    "bye",
    "goodbye",
    "bye bye",
    "hang up",
    "that's all",
    "that is all",
    "that's it for now",
    "stop",
    "end",
    "end the call",
]

# Re-prompts for missing or low-confidence speech, by consecutive miss count.
# The last entry is repeated for every further miss.
REPROMPTS = [
    "Sorry, I didn't quite catch that. Could you say it again?",
    "Still didn't get that one. Could you give it to me in a few words?",
    "The line's a bit rough. Just a yes or no is fine, or tell me one word.",
]

# Spoken when the completion provider cannot be reached after all retries.
COMPLETION_FALLBACK = "Sorry, I lost my train of thought there. Could you say that again?"

# Spoken when a turn fails unexpectedly.
APOLOGY = "Sorry about that, something went a bit wonky on my end. What were you saying?"

# Spoken when a turn fails unexpectedly and the call has to end.
APOLOGY_GOODBYE = "Sorry, I'm having trouble on my end. Please call back in a moment. Bye for now."

# Spoken when the call ends normally.
CLOSING_LINE = "No worries, thanks for calling. Have a good one, bye!"

# Spoken when the turn ceiling is reached.
TURN_LIMIT_CLOSING_LINE = "We've covered a lot, so I'll let you go now. Thanks for calling, bye!"
