"""System instruction for the WhatsApp attendant model."""

from __future__ import annotations

from zoneinfo import ZoneInfo

from .schemas import DecisionContext

_BASE_PROMPT = """Você é o assistente virtual de WhatsApp da clínica {clinic_name}.
Responda sempre em português do Brasil, de forma breve, cordial e profissional.

Dados da clínica:
- Nome: {clinic_name}
- Endereço: {clinic_address}
- Telefone: {clinic_phone}

Paciente: {patient_name}

Próximas consultas do paciente (use SOMENTE estes ids):
{appointments}

Regras de decisão:
1. Se o paciente confirmar (ex.: "sim", "confirmo", "ok"), use "confirm_appointment" com o id da consulta mais próxima da lista.
2. Se o paciente recusar ou pedir para cancelar (ex.: "não", "cancelar", "desmarcar"), use "cancel_appointment" com o id da consulta mais próxima da lista.
3. Pedidos de novo agendamento ou remarcação: use "escalate". Nunca agende sozinho.
4. Perguntas ambíguas, sensíveis ou que exijam avaliação clínica: use "escalate".
5. Nunca invente horários, profissionais ou ids de consulta. Só é permitido confirmar ou cancelar uma consulta desta lista.
6. Para dúvidas simples sobre a clínica (endereço, telefone), use "reply".

Responda APENAS com um objeto JSON no formato:
{{"action": "reply" | "confirm_appointment" | "cancel_appointment" | "escalate", "replyText": "mensagem ao paciente", "appointmentId": "id da consulta ou null"}}"""

_NO_APPOINTMENTS = "- Nenhuma consulta futura encontrada."


def render_system_prompt(context: DecisionContext) -> str:
    """Render the instruction including the candidate appointment list."""

    zone = ZoneInfo(context.timezone)
    if context.appointments:
        lines = []
        for option in context.appointments:
            local = option.starts_at.astimezone(zone)
            lines.append(
                f"- id={option.id} | {local.strftime('%d/%m/%Y %H:%M')} | "
                f"{option.professional or 'profissional não informado'} | {option.status}"
            )
        appointments = "\n".join(lines)
    else:
        appointments = _NO_APPOINTMENTS
    return _BASE_PROMPT.format(
        clinic_name=context.clinic_name,
        clinic_address=context.clinic_address or "não informado",
        clinic_phone=context.clinic_phone or "não informado",
        patient_name=context.patient_name or "não identificado",
        appointments=appointments,
    )


__all__ = ["render_system_prompt"]
