"""TwiML rendering for the discrete-turn and streaming transports."""
from typing import Dict, Optional

from voice_agent.services.call_session.models import TurnResult, Utterance


def escape_xml(text: str) -> str:
    """Escape XML special characters."""
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


class TwimlRenderer:
    """Renders turn results as Twilio voice markup."""

    def __init__(
        self,
        voice: str = "Polly.Olivia-Neural",
        language: str = "en-AU",
        hints: str = "",
    ):
        self.voice = voice
        self.language = language
        self.hints = hints

    def _utterance(self, utterance: Utterance, audio_base_url: str) -> str:
        if utterance.audio_id:
            url = f"{audio_base_url}/audio/{utterance.audio_id}"
            return f"<Play>{escape_xml(url)}</Play>"
        return f'<Say voice="{escape_xml(self.voice)}" language="{escape_xml(self.language)}">{escape_xml(utterance.text)}</Say>'

    def render_turn(self, result: TurnResult, action_url: str, audio_base_url: str) -> str:
        """
        Generate TwiML for a turn.

        Listening turns wrap playback in a speech Gather that posts to
        action_url, followed by a Redirect to the same URL so a silent caller
        comes back as an empty turn. Ending turns play and hang up.

        Args:
            result: Turn produced by the orchestrator
            action_url: URL Twilio posts the next caller utterance to
            audio_base_url: Base URL the audio retrieval endpoint is served under

        Returns:
            TwiML XML string
        """
        playback = "\n        ".join(
            self._utterance(utterance, audio_base_url) for utterance in result.utterances
        )

        if result.ends_call:
            return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    {playback}
    <Hangup/>
</Response>"""

        hints_attr = f' hints="{escape_xml(self.hints)}"' if self.hints else ""
        action = escape_xml(action_url)
        return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Gather action="{action}" method="POST" input="speech" speechTimeout="auto" language="{escape_xml(self.language)}"{hints_attr}>
        {playback}
    </Gather>
    <Redirect method="POST">{action}</Redirect>
</Response>"""

    def render_say(self, text: str, action_url: Optional[str] = None) -> str:
        """Generate TwiML that speaks text, then gathers again or hangs up."""
        say = self._utterance(Utterance(text=text), "")
        if action_url is None:
            return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    {say}
    <Hangup/>
</Response>"""
        action = escape_xml(action_url)
        return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Gather action="{action}" method="POST" input="speech" speechTimeout="auto" language="{escape_xml(self.language)}">
        {say}
    </Gather>
    <Redirect method="POST">{action}</Redirect>
</Response>"""

    def render_stream_connect(self, stream_url: str, parameters: Optional[Dict[str, str]] = None) -> str:
        """Generate TwiML that opens a bidirectional media stream."""
        params = "".join(
            f'\n            <Parameter name="{escape_xml(name)}" value="{escape_xml(value)}"/>'
            for name, value in (parameters or {}).items()
            if value
        )
        return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{escape_xml(stream_url)}">{params}
        </Stream>
    </Connect>
</Response>"""
