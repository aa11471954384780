"""
Reply templates.

The dialogue only *selects* a template key and its arguments; the
transport renders them. ``render()`` is the reference rendering used by the
HTTP surface and tests.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from slotbot.core.scheduling.types import SlotOffer

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("en", "ru", "es", "pt", "he")
FALLBACK_LANGUAGE = "en"


class Templates:
    """Template keys selected by the dialogue."""

    HELP = "dialogue.help"
    NOT_UNDERSTOOD = "dialogue.not_understood"

    ASK_SERVICE = "ask.service"
    ASK_STAFF = "ask.staff"
    ASK_DATE = "ask.date"

    OFFERS = "offers.show"
    OFFERS_REFRESHED = "offers.refreshed"
    OFFERS_PICK_AGAIN = "offers.pick_again"

    CONFIRM = "confirm.ask"
    BOOKED = "booking.confirmed"

    WAITLIST_OFFER = "waitlist.offer"
    WAITLIST_JOINED = "waitlist.joined"
    WAITLIST_DECLINED = "waitlist.declined"
    WAITLIST_SLOT_AVAILABLE = "waitlist.slot_available"
    WAITLIST_BOOKED = "waitlist.booked"
    WAITLIST_PASSED = "waitlist.passed"
    WAITLIST_UNAVAILABLE = "waitlist.unavailable"

    RETRY_LATER = "error.retry_later"


def resolve_language(tag: Optional[str], default: str = FALLBACK_LANGUAGE) -> str:
    """
    Map a detected language tag to a supported language.

    Accepts region-qualified tags ("pt-BR", "es_MX"); "iw" is the legacy
    code for Hebrew.
    """
    if not tag:
        return default if default in SUPPORTED_LANGUAGES else FALLBACK_LANGUAGE
    base = tag.replace("_", "-").split("-")[0].lower()
    if base == "iw":
        base = "he"
    if base in SUPPORTED_LANGUAGES:
        return base
    return default if default in SUPPORTED_LANGUAGES else FALLBACK_LANGUAGE


def format_when(start: datetime) -> str:
    """Language-neutral date/time, e.g. 03.03 14:30."""
    return start.strftime("%d.%m %H:%M")


def offer_label(offer: SlotOffer) -> str:
    label = format_when(offer.start)
    if offer.staff_name:
        label = f"{label} · {offer.staff_name}"
    return label


_CATALOG: dict[str, dict[str, str]] = {
    "en": {
        Templates.HELP: "Hi! I can book an appointment for you. What would you like to book?",
        Templates.NOT_UNDERSTOOD: "Sorry, I didn't get that.",
        Templates.ASK_SERVICE: "Which service would you like?",
        Templates.ASK_STAFF: "Who would you like to book with?",
        Templates.ASK_DATE: "Which day works for you?",
        Templates.OFFERS: "Here are the available times for {service_name}:",
        Templates.OFFERS_REFRESHED: "That time was just booked. Here are other options:",
        Templates.OFFERS_PICK_AGAIN: "Please choose one of these times:",
        Templates.CONFIRM: "Book {service_name} with {staff_name} on {when}?",
        Templates.BOOKED: "You're booked! {service_name} with {staff_name} on {when}. Your code is {booking_code}.",
        Templates.WAITLIST_OFFER: "Sorry, nothing is free on {date}. Shall I add you to the waitlist?",
        Templates.WAITLIST_JOINED: "You're on the waitlist for {date} (position {position}). We'll message you if a slot opens up.",
        Templates.WAITLIST_DECLINED: "No problem. Message us any time to book.",
        Templates.WAITLIST_SLOT_AVAILABLE: "Good news! {when} with {staff_name} is now free. Book it within {minutes} minutes?",
        Templates.WAITLIST_BOOKED: "Done! You're booked on {when}. Your code is {booking_code}.",
        Templates.WAITLIST_PASSED: "Okay, we'll keep you on the waitlist.",
        Templates.WAITLIST_UNAVAILABLE: "Sorry, that offer is no longer available.",
        Templates.RETRY_LATER: "Sorry, something went wrong on our side. Please try again in a moment.",
        "error.invalid_input": "Sorry, I couldn't use that. Could you try again?",
        "error.start_in_past": "That time has already passed. Please pick another one.",
        "error.outside_working_hours": "We're not working at that time. Please pick another one.",
        "error.staff_not_found": "That person isn't available for booking. Please choose someone else.",
        "error.staff_inactive": "That person isn't available for booking. Please choose someone else.",
        "error.service_not_found": "That service isn't available. Please choose another one.",
        "error.slot_taken": "That time was just booked.",
        "error.booking_not_found": "We couldn't find that booking.",
    },
    "ru": {
        Templates.HELP: "Здравствуйте! Я помогу записаться. На какую услугу вас записать?",
        Templates.NOT_UNDERSTOOD: "Извините, я не понял.",
        Templates.ASK_SERVICE: "Какая услуга вас интересует?",
        Templates.ASK_STAFF: "К какому мастеру вас записать?",
        Templates.ASK_DATE: "На какой день?",
        Templates.OFFERS: "Свободное время на {service_name}:",
        Templates.OFFERS_REFRESHED: "Это время только что заняли. Вот другие варианты:",
        Templates.OFFERS_PICK_AGAIN: "Пожалуйста, выберите одно из этих времён:",
        Templates.CONFIRM: "Записать вас на {service_name} к {staff_name} на {when}?",
        Templates.BOOKED: "Готово! {service_name} у {staff_name}, {when}. Ваш код: {booking_code}.",
        Templates.WAITLIST_OFFER: "К сожалению, на {date} всё занято. Добавить вас в лист ожидания?",
        Templates.WAITLIST_JOINED: "Вы в листе ожидания на {date} (номер {position}). Напишем, если освободится время.",
        Templates.WAITLIST_DECLINED: "Хорошо. Пишите в любое время.",
        Templates.WAITLIST_SLOT_AVAILABLE: "Освободилось время: {when}, мастер {staff_name}. Записать? Предложение действует {minutes} минут.",
        Templates.WAITLIST_BOOKED: "Готово! Вы записаны на {when}. Ваш код: {booking_code}.",
        Templates.WAITLIST_PASSED: "Хорошо, оставляем вас в листе ожидания.",
        Templates.WAITLIST_UNAVAILABLE: "К сожалению, это предложение уже неактуально.",
        Templates.RETRY_LATER: "Извините, произошла ошибка. Попробуйте ещё раз чуть позже.",
        "error.invalid_input": "Не получилось разобрать. Попробуйте ещё раз.",
        "error.start_in_past": "Это время уже прошло. Выберите другое.",
        "error.outside_working_hours": "В это время мы не работаем. Выберите другое.",
        "error.staff_not_found": "К этому мастеру сейчас нельзя записаться. Выберите другого.",
        "error.staff_inactive": "К этому мастеру сейчас нельзя записаться. Выберите другого.",
        "error.service_not_found": "Эта услуга недоступна. Выберите другую.",
        "error.slot_taken": "Это время только что заняли.",
        "error.booking_not_found": "Запись не найдена.",
    },
    "es": {
        Templates.HELP: "¡Hola! Puedo reservarte una cita. ¿Qué quieres reservar?",
        Templates.NOT_UNDERSTOOD: "Perdona, no te he entendido.",
        Templates.ASK_SERVICE: "¿Qué servicio quieres?",
        Templates.ASK_STAFF: "¿Con quién quieres reservar?",
        Templates.ASK_DATE: "¿Qué día te viene bien?",
        Templates.OFFERS: "Estos son los horarios disponibles para {service_name}:",
        Templates.OFFERS_REFRESHED: "Esa hora se acaba de reservar. Aquí tienes otras opciones:",
        Templates.OFFERS_PICK_AGAIN: "Elige uno de estos horarios:",
        Templates.CONFIRM: "¿Reservo {service_name} con {staff_name} el {when}?",
        Templates.BOOKED: "¡Reservado! {service_name} con {staff_name} el {when}. Tu código es {booking_code}.",
        Templates.WAITLIST_OFFER: "Lo siento, no hay nada libre el {date}. ¿Te apunto en la lista de espera?",
        Templates.WAITLIST_JOINED: "Estás en la lista de espera para el {date} (posición {position}). Te avisaremos si se libera un hueco.",
        Templates.WAITLIST_DECLINED: "Sin problema. Escríbenos cuando quieras.",
        Templates.WAITLIST_SLOT_AVAILABLE: "¡Buenas noticias! {when} con {staff_name} está libre. ¿Lo reservas en los próximos {minutes} minutos?",
        Templates.WAITLIST_BOOKED: "¡Hecho! Reservado el {when}. Tu código es {booking_code}.",
        Templates.WAITLIST_PASSED: "De acuerdo, sigues en la lista de espera.",
        Templates.WAITLIST_UNAVAILABLE: "Lo siento, esa oferta ya no está disponible.",
        Templates.RETRY_LATER: "Lo siento, algo ha fallado. Inténtalo de nuevo en un momento.",
        "error.invalid_input": "No he podido usar eso. ¿Lo intentas de nuevo?",
        "error.start_in_past": "Esa hora ya ha pasado. Elige otra.",
        "error.outside_working_hours": "No trabajamos a esa hora. Elige otra.",
        "error.staff_not_found": "No se puede reservar con esa persona. Elige a otra.",
        "error.staff_inactive": "No se puede reservar con esa persona. Elige a otra.",
        "error.service_not_found": "Ese servicio no está disponible. Elige otro.",
        "error.slot_taken": "Esa hora se acaba de reservar.",
        "error.booking_not_found": "No encontramos esa reserva.",
    },
    "pt": {
        Templates.HELP: "Olá! Posso marcar um horário para você. O que gostaria de marcar?",
        Templates.NOT_UNDERSTOOD: "Desculpe, não entendi.",
        Templates.ASK_SERVICE: "Qual serviço você gostaria?",
        Templates.ASK_STAFF: "Com quem você gostaria de marcar?",
        Templates.ASK_DATE: "Qual dia fica bom para você?",
        Templates.OFFERS: "Estes são os horários disponíveis para {service_name}:",
        Templates.OFFERS_REFRESHED: "Esse horário acabou de ser reservado. Aqui estão outras opções:",
        Templates.OFFERS_PICK_AGAIN: "Escolha um destes horários:",
        Templates.CONFIRM: "Marcar {service_name} com {staff_name} em {when}?",
        Templates.BOOKED: "Marcado! {service_name} com {staff_name} em {when}. Seu código é {booking_code}.",
        Templates.WAITLIST_OFFER: "Desculpe, não há horários livres em {date}. Quer entrar na lista de espera?",
        Templates.WAITLIST_JOINED: "Você está na lista de espera para {date} (posição {position}). Avisaremos se abrir um horário.",
        Templates.WAITLIST_DECLINED: "Sem problemas. Fale com a gente quando quiser.",
        Templates.WAITLIST_SLOT_AVAILABLE: "Boa notícia! {when} com {staff_name} está livre. Quer marcar nos próximos {minutes} minutos?",
        Templates.WAITLIST_BOOKED: "Pronto! Marcado em {when}. Seu código é {booking_code}.",
        Templates.WAITLIST_PASSED: "Tudo bem, você continua na lista de espera.",
        Templates.WAITLIST_UNAVAILABLE: "Desculpe, essa oferta não está mais disponível.",
        Templates.RETRY_LATER: "Desculpe, algo deu errado. Tente novamente em instantes.",
        "error.invalid_input": "Não consegui usar isso. Pode tentar de novo?",
        "error.start_in_past": "Esse horário já passou. Escolha outro.",
        "error.outside_working_hours": "Não atendemos nesse horário. Escolha outro.",
        "error.staff_not_found": "Não é possível marcar com essa pessoa. Escolha outra.",
        "error.staff_inactive": "Não é possível marcar com essa pessoa. Escolha outra.",
        "error.service_not_found": "Esse serviço não está disponível. Escolha outro.",
        "error.slot_taken": "Esse horário acabou de ser reservado.",
        "error.booking_not_found": "Não encontramos essa reserva.",
    },
    "he": {
        Templates.HELP: "שלום! אפשר לקבוע תור. מה תרצו לקבוע?",
        Templates.NOT_UNDERSTOOD: "סליחה, לא הבנתי.",
        Templates.ASK_SERVICE: "איזה שירות תרצו?",
        Templates.ASK_STAFF: "אצל מי תרצו לקבוע?",
        Templates.ASK_DATE: "באיזה יום נוח לכם?",
        Templates.OFFERS: "אלה השעות הפנויות עבור {service_name}:",
        Templates.OFFERS_REFRESHED: "השעה הזאת נתפסה עכשיו. הנה אפשרויות אחרות:",
        Templates.OFFERS_PICK_AGAIN: "בחרו אחת מהשעות האלה:",
        Templates.CONFIRM: "לקבוע {service_name} אצל {staff_name} ב-{when}?",
        Templates.BOOKED: "נקבע! {service_name} אצל {staff_name} ב-{when}. הקוד שלכם: {booking_code}.",
        Templates.WAITLIST_OFFER: "מצטערים, אין שעות פנויות ב-{date}. להוסיף אתכם לרשימת ההמתנה?",
        Templates.WAITLIST_JOINED: "אתם ברשימת ההמתנה ל-{date} (מקום {position}). נעדכן אם יתפנה תור.",
        Templates.WAITLIST_DECLINED: "אין בעיה. כתבו לנו מתי שתרצו.",
        Templates.WAITLIST_SLOT_AVAILABLE: "התפנה תור: {when} אצל {staff_name}. לקבוע? ההצעה בתוקף {minutes} דקות.",
        Templates.WAITLIST_BOOKED: "נקבע! {when}. הקוד שלכם: {booking_code}.",
        Templates.WAITLIST_PASSED: "בסדר, אתם נשארים ברשימת ההמתנה.",
        Templates.WAITLIST_UNAVAILABLE: "מצטערים, ההצעה כבר לא בתוקף.",
        Templates.RETRY_LATER: "מצטערים, משהו השתבש. נסו שוב בעוד רגע.",
        "error.invalid_input": "לא הצלחתי להבין. נסו שוב?",
        "error.start_in_past": "השעה הזאת כבר עברה. בחרו שעה אחרת.",
        "error.outside_working_hours": "אנחנו לא עובדים בשעה הזאת. בחרו שעה אחרת.",
        "error.staff_not_found": "אי אפשר לקבוע אצל איש הצוות הזה. בחרו מישהו אחר.",
        "error.staff_inactive": "אי אפשר לקבוע אצל איש הצוות הזה. בחרו מישהו אחר.",
        "error.service_not_found": "השירות הזה לא זמין. בחרו שירות אחר.",
        "error.slot_taken": "השעה הזאת נתפסה עכשיו.",
        "error.booking_not_found": "לא מצאנו את התור הזה.",
    },
}


class Buttons:
    """Label keys for tappable choices."""

    YES = "button.yes"
    NO = "button.no"
    CHANGE_TIME = "button.change_time"
    JOIN_WAITLIST = "button.join_waitlist"
    DECLINE_WAITLIST = "button.decline_waitlist"
    BOOK = "button.book"
    PASS = "button.pass"
    ANY_STAFF = "button.any_staff"


_BUTTON_LABELS: dict[str, dict[str, str]] = {
    "en": {
        Buttons.YES: "Yes, book it",
        Buttons.NO: "No",
        Buttons.CHANGE_TIME: "Another time",
        Buttons.JOIN_WAITLIST: "Join waitlist",
        Buttons.DECLINE_WAITLIST: "No, thanks",
        Buttons.BOOK: "Book it",
        Buttons.PASS: "Skip",
        Buttons.ANY_STAFF: "Anyone available",
    },
    "ru": {
        Buttons.YES: "Да, записать",
        Buttons.NO: "Нет",
        Buttons.CHANGE_TIME: "Другое время",
        Buttons.JOIN_WAITLIST: "В лист ожидания",
        Buttons.DECLINE_WAITLIST: "Нет, спасибо",
        Buttons.BOOK: "Записаться",
        Buttons.PASS: "Пропустить",
        Buttons.ANY_STAFF: "Любой мастер",
    },
    "es": {
        Buttons.YES: "Sí, reservar",
        Buttons.NO: "No",
        Buttons.CHANGE_TIME: "Otra hora",
        Buttons.JOIN_WAITLIST: "Lista de espera",
        Buttons.DECLINE_WAITLIST: "No, gracias",
        Buttons.BOOK: "Reservar",
        Buttons.PASS: "Saltar",
        Buttons.ANY_STAFF: "Cualquiera",
    },
    "pt": {
        Buttons.YES: "Sim, marcar",
        Buttons.NO: "Não",
        Buttons.CHANGE_TIME: "Outro horário",
        Buttons.JOIN_WAITLIST: "Lista de espera",
        Buttons.DECLINE_WAITLIST: "Não, obrigado",
        Buttons.BOOK: "Marcar",
        Buttons.PASS: "Pular",
        Buttons.ANY_STAFF: "Qualquer pessoa",
    },
    "he": {
        Buttons.YES: "כן, לקבוע",
        Buttons.NO: "לא",
        Buttons.CHANGE_TIME: "שעה אחרת",
        Buttons.JOIN_WAITLIST: "לרשימת ההמתנה",
        Buttons.DECLINE_WAITLIST: "לא, תודה",
        Buttons.BOOK: "לקבוע",
        Buttons.PASS: "לדלג",
        Buttons.ANY_STAFF: "כל מי שפנוי",
    },
}

for _lang, _labels in _BUTTON_LABELS.items():
    _CATALOG[_lang].update(_labels)


def render(template_key: str, language: str, args: Optional[dict[str, Any]] = None) -> str:
    """
    Render a template, falling back to English and then to the key itself.

    Missing arguments leave their placeholders untouched.
    """
    lang = resolve_language(language)
    text = _CATALOG[lang].get(template_key) or _CATALOG[FALLBACK_LANGUAGE].get(template_key)
    if text is None:
        logger.warning(f"No template for key {template_key!r}")
        return template_key
    try:
        return text.format(**(args or {}))
    except (KeyError, IndexError) as e:
        logger.warning(f"Template {template_key!r} missing argument {e}")
        return text
