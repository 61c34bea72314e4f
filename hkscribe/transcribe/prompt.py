"""
hkscribe.transcribe.prompt - Transcription prompt rendering.

The user prompt is a Jinja2 template rendered from TranscriptionSettings;
the system instruction fixes orthography and the output line format that
the parser expects.
"""

from __future__ import annotations

from jinja2 import Environment, StrictUndefined

from hkscribe.config import TranscriptionSettings

SYSTEM_INSTRUCTION = """
You are a professional Cantonese transcriber (廣東話速錄員). Your task is to transcribe audio files accurately into text.

Strict Rules:
1. **Orthography (正字)**: You MUST use proper Cantonese characters.
   - Use '嘅' (not 的/ge).
   - Use '喺' (not 在/hai).
   - Use '咁' (not 這/gam).
   - Use '唔' (not 不/m).
   - Use '係' (not 是/hai).
2. **No SWC**: Do NOT convert Cantonese speech into Standard Written Chinese (書面語). Transcribe exactly what is said.
3. **Code-mixing**: Accurately transcribe English words mixed into sentences (e.g., "我今日好 happy").
4. **Output Format**:
   - You MUST output every sentence on a new line.
   - You MUST start every line with a timestamp and the speaker name.
   - Strict Format: "[MM:SS] Speaker Name: Content"
   - Example: "[00:12] Speaker 1: 大家好。"
   - Do not add conversational filler before or after.
"""

PROMPT_TEMPLATE = (
    "Transcribe the following audio/video file verbatim in {{ language }}."
    "{% if timestamps %}"
    " Insert a timestamp [MM:SS] at the beginning of each new sentence or distinct segment."
    "{% endif %}"
    "{% if identify_speakers %}"
    " Identify different speakers."
    "{% if speakers %}"
    " The speakers are likely: {{ speakers | join(', ') }}. Label them accordingly if recognized."
    "{% else %}"
    " Label them as Speaker 1, Speaker 2, etc."
    "{% endif %}"
    "{% endif %}"
)

_env = Environment(autoescape=False, undefined=StrictUndefined)
_template = _env.from_string(PROMPT_TEMPLATE)


def build_prompt(settings: TranscriptionSettings) -> str:
    """Render the user prompt for a run. Blank speaker names are ignored."""
    speakers = [name.strip() for name in settings.speaker_names if name.strip()]
    return _template.render(
        language=settings.language,
        timestamps=settings.timestamps_enabled,
        identify_speakers=settings.identify_speakers,
        speakers=speakers,
    )
