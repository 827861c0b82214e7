"""
TwiML builders, one per call state.

Every function is pure: same inputs, same XML. Actions are relative paths so
Twilio resolves them against the webhook host it is already calling.
"""

from twilio.twiml.voice_response import VoiceResponse

VOICE_PATH = "/twilio-voice"
GATHER_PATH = "/gather"

PROCESSING_MESSAGE = "Okay, let me process that."
PROCESSING_FALLBACK_MESSAGE = "Something went wrong while processing. Please try again."
REPEAT_MESSAGE = "Sorry, I didn't catch that. Could you please repeat?"
NO_ANSWER_MESSAGE = "Sorry, I couldn't generate a response for that."
ANYTHING_ELSE_MESSAGE = "Did you have another question?"
TASK_ERROR_MESSAGE = "Sorry, an error occurred while processing your request. Please try again."
HANGUP_MESSAGE = "An internal error occurred. Please hang up and try again."


def _listen(response: VoiceResponse) -> None:
    response.gather(input="speech", action=GATHER_PATH, speech_timeout="auto")


def greeting(assistant_name: str) -> str:
    """Greet and listen; silence loops back to the greeting."""
    response = VoiceResponse()
    response.say(f"Welcome to the {assistant_name}. How can I help you today?")
    _listen(response)
    response.redirect(VOICE_PATH)
    return str(response)


def processing(pause_seconds: int) -> str:
    """Placeholder spoken while the chat API runs.

    The pause must outlast the upstream call; if nothing replaces this script
    in time, the caller hears the fallback and the call restarts.
    """
    response = VoiceResponse()
    response.say(PROCESSING_MESSAGE)
    response.pause(length=pause_seconds)
    response.say(PROCESSING_FALLBACK_MESSAGE)
    response.redirect(VOICE_PATH)
    return str(response)


def repeat_prompt() -> str:
    response = VoiceResponse()
    response.say(REPEAT_MESSAGE)
    _listen(response)
    response.redirect(VOICE_PATH)
    return str(response)


def answer(text: str) -> str:
    """Speak the assistant answer, then listen for the next question."""
    response = VoiceResponse()
    if text and text.strip():
        response.say(text)
    else:
        response.say(NO_ANSWER_MESSAGE)
    _listen(response)
    response.say(ANYTHING_ELSE_MESSAGE)
    response.redirect(VOICE_PATH)
    return str(response)


def apology_and_restart() -> str:
    response = VoiceResponse()
    response.say(TASK_ERROR_MESSAGE)
    response.pause(length=1)
    response.redirect(VOICE_PATH)
    return str(response)


def apology_and_hangup() -> str:
    response = VoiceResponse()
    response.say(HANGUP_MESSAGE)
    response.hangup()
    return str(response)
