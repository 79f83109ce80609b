FRIENDLY_MESSAGES = {
    "ConnectError": "The payment provider could not be reached. Please try again later.",
    "ConnectionError": "Unable to connect to a required service. Please try again later.",
    "TimeoutException": "The payment provider took too long to respond. Please try again.",
    "TimeoutError": "The request took too long. Please try again later.",
    "SMTPException": "We could not send a notification email right now.",
    "OperationalError": "Temporary issue while accessing listings. Please try again shortly.",
    "IntegrityError": "This change conflicts with an existing listing or access request.",
    "InvalidOperation": "The amount provided is not a valid number.",
    "ValueError": "Invalid data received. Please check your input and try again.",
}


def get_friendly_message(error: Exception) -> str:
    name = type(error).__name__
    for key, msg in FRIENDLY_MESSAGES.items():
        if key.lower() in name.lower():
            return msg
    return "Something went wrong on our end. Please try again."
