import asyncio
import base64
import json
import re
import time
from datetime import datetime
from typing import List, Optional

from isp_support.logging_config import get_logger
from isp_support.services import local_nlp
from isp_support.services.errors import ClassifierError
from isp_support.services.llm import LLMProvider

logger = get_logger("ai_service")

NO_ANSWER = "[NO_ANSWER]"
ADDRESS_DETECTED = "[DIRECCION_DETECTADA]"
DIRECT_CLOSE = "[CIERRE_DIRECTO]"
SALES_SENTINELS = (ADDRESS_DETECTED, DIRECT_CLOSE)

INTENTS = ("ventas", "soporte", "pregunta_general")
SENTIMENTS = ("enojado", "frustrado", "neutro", "contento")

SALES_FALLBACK_RESPONSE = (
    "Lo siento, tuve un problema procesando tu consulta. Un asesor humano la revisará a la brevedad."
)

INTENT_PROMPT = """Clasificá la intención del mensaje de un cliente de un proveedor de internet.
Respondé ÚNICAMENTE con una palabra: ventas, soporte o pregunta_general.

Mensaje: "{message}"
"""

SENTIMENT_PROMPT = """Analizá el sentimiento del mensaje de un cliente de un proveedor de internet.
Respondé ÚNICAMENTE con una palabra: enojado, frustrado, neutro o contento.

Mensaje: "{message}"
"""

CONFIRMATION_PROMPT = """Sos un experto analista de intenciones con especialización en el dialecto español rioplatense (Argentina).
Un cliente está respondiendo a una pregunta de confirmación. Determiná si la intención es afirmativa.

RESPONDÉ ÚNICAMENTE CON "SI" O "NO".

Consideradas afirmativas: "si dale", "si metele", "metele pata", "de una", "joya", "si por favor", "claro", "obvio", "si quiero".

Mensaje del cliente: "{message}"
"""

SUPPORT_PROMPT = """Sos el asistente de soporte de un proveedor de internet.
Respondé la última pregunta del cliente usando SOLO las preguntas frecuentes de abajo.
Si la respuesta no está en las preguntas frecuentes, respondé exactamente [NO_ANSWER].

Preguntas frecuentes de soporte:
{knowledge}
"""

SALES_PROMPT = """Sos I-Bot, asistente de ventas de un proveedor de internet. Hablás con {name}.
Usá la información de planes y cobertura de abajo. Respondé breve y cordial.

{knowledge}

REGLAS DE CIERRE (MUY IMPORTANTE):
Si el último mensaje del cliente contiene una dirección (calle, barrio, etc.), confirmá la cobertura, presentá la oferta, terminá con una pregunta de confirmación (ej: "¿Querés que un asesor se ponga en contacto?") y agregá la frase secreta [DIRECCION_DETECTADA].
Si el cliente NO dio una dirección pero expresa un deseo claro de contratar o hablar con un asesor, respondé ÚNICAMENTE la pregunta de confirmación y agregá la frase secreta [CIERRE_DIRECTO].
"""

RECEIPT_PROMPT = """Analizá este comprobante de pago. Devolvé SOLO un JSON con las claves:
"monto" (número), "referencia" (texto o null), "fecha" (YYYY-MM-DD o null), "titular" (texto o null).
Si la imagen no es un comprobante de pago devolvé {"error": "no es un comprobante"}.
"""

APPOINTMENT_PROMPT = """Hoy es {now}. Interpretá la fecha y hora de esta propuesta de visita técnica: "{text}".
Devolvé SOLO un JSON {{"start": "YYYY-MM-DDTHH:MM", "end": "YYYY-MM-DDTHH:MM"}}.
Si no hay hora usá las 09:00, si no hay fin usá una hora de duración.
Si no se puede interpretar devolvé {{"error": "sin fecha"}}.
"""


def format_knowledge(entries: List[dict]) -> str:
    """Render FAQ entries as a Q/A list for prompts."""
    if not entries:
        return ""
    lines = []
    for entry in entries:
        lines.append(f"- P: {entry.get('question', '')}\n  R: {entry.get('answer', '')}")
    return "\n".join(lines)


def strip_sales_sentinels(text: str) -> tuple[str, bool]:
    """Remove closing tags from a sales reply. Returns (clean_text, had_tag)."""
    found = any(tag in text for tag in SALES_SENTINELS)
    for tag in SALES_SENTINELS:
        text = text.replace(tag, "")
    return text.strip(), found


def _extract_json(text: str) -> dict:
    cleaned = re.sub(r"```(?:json)?", "", text or "").strip()
    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if not match:
        raise ClassifierError(f"No JSON in model output: {cleaned[:80]}")
    try:
        return json.loads(match.group(0))
    except ValueError as exc:
        raise ClassifierError(f"Invalid JSON in model output: {exc}") from exc


def _to_openai_messages(history: List[dict]) -> List[dict]:
    role_map = {"user": "user", "model": "assistant"}
    return [{"role": role_map.get(turn["role"], "user"), "content": turn["text"]} for turn in history]


class AIService:
    """Classifiers and dialogue generation over an LLM provider.

    Every call degrades to a safe default when the provider is missing or
    fails: keyword classification for intent/sentiment, NO for
    confirmations, [NO_ANSWER] for support answers.
    """

    def __init__(self, provider: Optional[LLMProvider] = None, model: Optional[str] = None):
        self.provider = provider
        self.model = model

    async def _generate(self, messages: List[dict], max_tokens: int = 500, temperature: float = 0.3) -> str:
        if self.provider is None:
            raise ClassifierError("LLM provider not configured")
        started = time.monotonic()
        try:
            response = await asyncio.to_thread(
                self.provider.generate,
                messages,
                model=self.model,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except ClassifierError:
            raise
        except Exception as exc:
            raise ClassifierError(str(exc)) from exc
        logger.info(
            "Timing",
            extra={"context": {"stage": "llm_ms", "elapsed_ms": round((time.monotonic() - started) * 1000, 2)}},
        )
        return (response.content or "").strip()

    async def classify_intent(self, text: str) -> str:
        try:
            result = (await self._generate([{"role": "user", "content": INTENT_PROMPT.format(message=text)}], 10)).lower()
        except ClassifierError as exc:
            logger.warning(f"Intent classification fell back to keywords: {exc}")
            return local_nlp.classify_intent(text)
        return result if result in ("ventas", "soporte") else "pregunta_general"

    async def analyze_sentiment(self, text: str) -> str:
        try:
            result = (await self._generate([{"role": "user", "content": SENTIMENT_PROMPT.format(message=text)}], 10)).lower()
        except ClassifierError as exc:
            logger.warning(f"Sentiment analysis fell back to keywords: {exc}")
            return local_nlp.analyze_sentiment(text)
        return result if result in ("enojado", "frustrado", "contento") else "neutro"

    async def analyze_confirmation(self, text: str) -> str:
        """SI/NO. Failure never auto-confirms."""
        try:
            result = await self._generate([{"role": "user", "content": CONFIRMATION_PROMPT.format(message=text)}], 5)
        except ClassifierError as exc:
            logger.warning(f"Confirmation analysis fell back to keywords: {exc}")
            return local_nlp.analyze_confirmation(text)
        return "SI" if result.strip().strip(".").upper() == "SI" else "NO"

    async def answer_support_question(self, history: List[dict], faqs: List[dict]) -> str:
        """Answer from support FAQs. Returns text that may be the [NO_ANSWER] sentinel."""
        if not faqs:
            return NO_ANSWER
        messages = [{"role": "system", "content": SUPPORT_PROMPT.format(knowledge=format_knowledge(faqs))}]
        messages.extend(_to_openai_messages(history))
        try:
            answer = await self._generate(messages)
        except ClassifierError as exc:
            logger.warning(f"Support answer failed: {exc}")
            return NO_ANSWER
        return answer or NO_ANSWER

    async def sales_reply(self, history: List[dict], prospect_name: str, knowledge: List[dict]) -> str:
        messages = [
            {
                "role": "system",
                "content": SALES_PROMPT.format(name=prospect_name, knowledge=format_knowledge(knowledge)),
            }
        ]
        messages.extend(_to_openai_messages(history))
        try:
            reply = await self._generate(messages, temperature=0.7)
        except ClassifierError as exc:
            logger.warning(f"Sales dialogue failed: {exc}")
            return SALES_FALLBACK_RESPONSE
        return reply or SALES_FALLBACK_RESPONSE

    async def analyze_receipt(self, content: bytes, mimetype: Optional[str]) -> dict:
        """Extract amount/reference/date from a payment receipt image or PDF."""
        encoded = base64.b64encode(content).decode("ascii")
        mimetype = mimetype or "image/jpeg"
        if mimetype == "application/pdf":
            part = {"type": "file", "file": {"filename": "comprobante.pdf", "file_data": f"data:{mimetype};base64,{encoded}"}}
        else:
            part = {"type": "image_url", "image_url": {"url": f"data:{mimetype};base64,{encoded}"}}
        messages = [{"role": "user", "content": [{"type": "text", "text": RECEIPT_PROMPT}, part]}]
        try:
            return _extract_json(await self._generate(messages, max_tokens=300, temperature=0))
        except ClassifierError as exc:
            logger.warning(f"Receipt analysis failed: {exc}")
            return {"error": "La IA no pudo procesar el archivo."}

    async def transcribe(self, content: bytes, mimetype: Optional[str]) -> Optional[str]:
        """Transcribe a voice note. Returns None on failure."""
        if self.provider is None:
            logger.warning("Audio transcription skipped: provider not configured")
            return None
        try:
            transcript = await asyncio.to_thread(
                self.provider.transcribe_audio,
                audio_bytes=content,
                filename="nota_de_voz.ogg",
                mime_type=mimetype,
            )
        except Exception as exc:
            logger.warning(f"Audio transcription failed: {exc}")
            return None
        return (transcript or "").strip() or None

    async def parse_appointment(self, text: str, now: datetime) -> Optional[tuple[datetime, datetime]]:
        """Natural language date -> (start, end); local parser when the LLM can't help."""
        try:
            raw = await self._generate(
                [{"role": "user", "content": APPOINTMENT_PROMPT.format(now=now.strftime("%Y-%m-%d %H:%M (%A)"), text=text)}],
                max_tokens=60,
                temperature=0,
            )
            data = _extract_json(raw)
            if "error" in data:
                raise ClassifierError(data["error"])
            start = datetime.fromisoformat(data["start"])
            end = datetime.fromisoformat(data.get("end") or data["start"])
        except (ClassifierError, KeyError, TypeError, ValueError) as exc:
            logger.info(f"Appointment parsed locally: {exc}")
            return local_nlp.parse_spanish_datetime(text, now)

        if start.tzinfo is None:
            start = start.replace(tzinfo=now.tzinfo)
        if end.tzinfo is None:
            end = end.replace(tzinfo=now.tzinfo)
        if end <= start:
            end = start + local_nlp.APPOINTMENT_DURATION
        return start, end
