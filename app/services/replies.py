"""User-facing texts."""

TRANSCRIPT_TEMPLATE = "(Audio transcrito: {text})"
TRANSCRIPTION_FAILED = "(Error al transcribir audio)"
IMAGE_FAILED = "(Error al procesar imagen)"

APOLOGY = "Lo siento, hubo un error al intentar generar una respuesta. Por favor, intenta de nuevo."
DELIVERY_FALLBACK = "Lo siento, no pude enviarte la respuesta completa. Por favor, escribe de nuevo en unos minutos."
INTERNAL_ERROR = "Lo siento, ocurrió un error interno al procesar tu conversación."

UNSUPPORTED_MEDIA = "Por ahora no puedo ver videos ni este tipo de archivos. ¿Puedes contarme por texto o audio?"

GREETING = "¡Hola! ¿En qué puedo ayudarte?"
RESTARTED = "¡Conversación reiniciada! ¿En qué puedo ayudarte hoy?"
UNKNOWN_COMMAND = "Comando no reconocido. Usa /ayuda para ver los comandos disponibles."
MODE_CHANGED = '¡Modo cambiado a "{mode}"! ¿En qué puedo ayudarte?'
MODE_UNKNOWN = "Modo no reconocido. Los modos disponibles son: {modes}"
HELP_HEADER = "Comandos disponibles:"
