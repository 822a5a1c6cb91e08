"""
Localized outbound message catalog (English and Hindi).

render(key, language, **params) looks up the template for the language,
falling back to English when a Hindi text is missing.
"""
from urllib.parse import quote

from django.conf import settings

DEFAULT_LANGUAGE = "en"

MESSAGES = {
    # ─── Storyteller ─────────────────────────────────────────────────────────
    "welcome": {
        "en": (
            "Hi {storyteller_name}, I am Vaani from Kahani. {buyer_name} has asked me to record "
            "your stories in your own voice. Every day, I'll send you one simple question. You can "
            "reply with a voice note whenever you wish. Your stories will become a beautiful album "
            "your family can keep forever. Please pin this chat for us to get started!"
        ),
        "hn": (
            "नमस्ते {storyteller_name}, मैं कहानी से वाणी हूँ। {buyer_name} ने मुझसे आपकी कहानियाँ "
            "आपकी अपनी आवाज़ में रिकॉर्ड करने के लिए कहा है। हर दिन मैं आपको एक आसान सवाल भेजूँगी। "
            "आप जब चाहें वॉइस नोट से जवाब दे सकते हैं। कृपया इस चैट को पिन कर लें!"
        ),
    },
    "readiness_prompt": {
        "en": "Hi {storyteller_name}, are you ready to share your Kahani? Reply \"Yes, let's begin\" or \"Maybe later\".",
        "hn": "नमस्ते {storyteller_name}, क्या आप अपनी कहानी सुनाने के लिए तैयार हैं? \"हाँ, शुरू करते हैं\" या \"थोड़ी देर में\" लिखें।",
    },
    "readiness_later": {
        "en": "No problem! I'll check back with you in a few hours. Take your time.",
        "hn": "कोई बात नहीं! मैं कुछ घंटों बाद फिर पूछूँगी। आराम से।",
    },
    "readiness_unclear": {
        "en": "I didn't quite understand. Please reply \"yes\" if you're ready to start, or \"later\" if you need more time.",
        "hn": "मैं समझ नहीं पाई। अगर आप तैयार हैं तो \"हाँ\" लिखें, या समय चाहिए तो \"बाद में\" लिखें।",
    },
    "question": {
        "en": "{storyteller_name}, here is today's question:\n\n{question}\n\nPlease reply with a voice note.",
        "hn": "{storyteller_name}, आज का सवाल:\n\n{question}\n\nकृपया वॉइस नोट से जवाब दें।",
    },
    "question_reminder": {
        "en": "Just a gentle reminder, {storyteller_name}:\n\n{question}\n\nWhenever you're ready, send a voice note.",
        "hn": "{storyteller_name}, एक छोटी सी याद:\n\n{question}\n\nजब आप तैयार हों, वॉइस नोट भेज दें।",
    },
    "voice_note_ack": {
        "en": "Thank you for sharing your story, {storyteller_name}! It's been saved safely. I'll send you the next question soon.",
        "hn": "अपनी कहानी सुनाने के लिए धन्यवाद, {storyteller_name}! यह सुरक्षित रख ली गई है। अगला सवाल जल्द ही भेजूँगी।",
    },
    "send_voice_note_reminder": {
        "en": "Please reply to the question with a voice note. Just press and hold the microphone button to record.",
        "hn": "कृपया सवाल का जवाब वॉइस नोट से दें। रिकॉर्ड करने के लिए माइक्रोफ़ोन बटन दबाकर रखें।",
    },
    "storyteller_completed": {
        "en": (
            "Thank you {storyteller_name}! You've answered all the questions. Your stories will be "
            "compiled into a beautiful album for your family."
        ),
        "hn": "धन्यवाद {storyteller_name}! आपने सभी सवालों के जवाब दे दिए हैं। आपकी कहानियाँ आपके परिवार के लिए एक सुंदर एल्बम बनेंगी।",
    },
    "storyteller_checkin": {
        "en": (
            "Hi {storyteller_name}, we haven't heard from you in a while. Whenever you're ready, just "
            "send a voice note answering the last question. Your family is looking forward to your stories!"
        ),
        "hn": (
            "नमस्ते {storyteller_name}, काफ़ी समय से आपका जवाब नहीं आया। जब भी आप तैयार हों, पिछले सवाल "
            "का जवाब वॉइस नोट से भेज दें। आपका परिवार आपकी कहानियों का इंतज़ार कर रहा है!"
        ),
    },
    "no_trial_found": {

        "en": "Hi! I couldn't find a Kahani order for this number. If someone shared a link with you, please open it and send the pre-filled message.",
        "hn": "नमस्ते! इस नंबर के लिए कोई कहानी ऑर्डर नहीं मिला। अगर किसी ने आपको लिंक भेजा है, तो उसे खोलकर पहले से लिखा संदेश भेजें।",
    },
    "trial_not_active": {
        "en": "Hi! Your Kahani order is still waiting for payment confirmation. We'll message you as soon as it's confirmed.",
        "hn": "नमस्ते! आपका कहानी ऑर्डर अभी भुगतान की पुष्टि का इंतज़ार कर रहा है। पुष्टि होते ही हम आपको संदेश भेजेंगे।",
    },
    # ─── Buyer ───────────────────────────────────────────────────────────────
    "buyer_confirmation": {
        "en": (
            "Hi {buyer_name}, thank you for choosing Kahani. You and {storyteller_name} are about to "
            "start something truly special. To confirm, you would like a mini album on \"{album_title}\" "
            "for {storyteller_name}. You will get a short message to forward to {storyteller_name} next."
        ),
    },
    "shareable_link": {
        "en": (
            "Please share this link with *{storyteller_name}*:\n{link}\n\nWhen {storyteller_name} opens it "
            "and sends the pre-filled message, we'll start chatting with them directly on WhatsApp!"
        ),
    },
    "buyer_sent_storyteller_link": {
        "en": (
            "Hi {buyer_name}! Looks like you clicked on the link that was meant for {storyteller_name}.\n\n"
            "No worries! Please *copy this link and send it to {storyteller_name}*:\n\n{link}\n\n"
            "They just need to click the link and send the pre-filled message."
        ),
    },
    "photo_request": {
        "en": (
            "Hi {buyer_name}, {storyteller_name}'s first few stories are now saved. Could you send "
            "one nice photo of {storyteller_name} for the album cover?"
        ),
    },
    "cover_saved": {
        "en": "Thank you for the photo! It will be the cover of {storyteller_name}'s album.",
    },
    "cover_failed": {
        "en": "Sorry, I couldn't save your image. Could you please try sending it again?",
    },
    "buyer_no_contact_reminder": {
        "en": (
            "Hi {buyer_name}, {storyteller_name} hasn't messaged us yet. Could you remind them to open "
            "the link you shared and send the pre-filled message?\n\n{link}"
        ),
    },
    "buyer_checkin": {
        "en": (
            "Hi {buyer_name}, {storyteller_name} hasn't replied to our last question for a few days. "
            "A gentle nudge from you could help them share their next story."
        ),
    },
    "buyer_completed": {

        "en": (
            "Hello {buyer_name}, {storyteller_name} has answered every question. Their Kahani album, "
            "their stories in their own voice, is being put together now."
        ),
    },
    # ─── Support channel ─────────────────────────────────────────────────────
    "support_escalation": {
        "en": (
            "Needs follow-up: trial {trial_id} ({storyteller_name}, {storyteller_phone}) has not confirmed "
            "readiness after {retry_count} reminders. Buyer: {buyer_name} {buyer_phone}."
        ),
    },
}


def render(key: str, language: str | None = None, **params) -> str:
    templates = MESSAGES[key]
    template = templates.get(language or DEFAULT_LANGUAGE) or templates[DEFAULT_LANGUAGE]
    return template.format(**params)


def storyteller_link(trial) -> str:
    """wa.me deep link carrying the st_ prefixed order id the storyteller sends back."""
    prefilled = f"Hi, {trial.buyer_name} has placed an order st_{trial.id} for me."
    return f"https://wa.me/{settings.WHATSAPP_BUSINESS_NUMBER_E164}?text={quote(prefilled)}"
