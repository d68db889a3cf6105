"""Localized status messages appended to the conversation.

Failures and lifecycle notices never surface as crashes: the turn loop and
the session turn them into one of these short messages.  Unknown languages
and missing keys fall back to English.
"""

from __future__ import annotations

from typing import Any

DEFAULT_LANGUAGE = "en"

CATALOGS: dict[str, dict[str, str]] = {
    "en": {
        "actions_pending": "{count} action(s) are waiting for your approval.",
        "actions_applied": "Applied {count} action(s).",
        "action_failed": (
            "Action {index} ({tool}) failed: {cause}. "
            "Actions applied before it were kept and can be undone."
        ),
        "actions_stopped": "Stopped after applying {count} action(s).",
        "actions_rejected": "The proposed actions were discarded.",
        "rejected_note": (
            "The user rejected these proposed actions, so nothing was changed: {summary}. "
            "Do not retry them unless the user asks."
        ),
        "model_error": "Error: {reason}",
        "truncated": (
            "Stopped after {rounds} tool rounds. "
            "Ask me to continue if there is more to do."
        ),
        "cancelled": "Cancelled.",
        "no_pending": "There is no pending action.",
        "undo_done": "Reverted {count} change(s).",
        "undo_failed": "Undo stopped after reverting {count} change(s): {cause}",
        "nothing_to_undo": "There is nothing to undo.",
        "approved": "Kept {count} change(s).",
        "store_degraded": "History could not be opened; this session will not be saved.",
    },
    "pt-BR": {
        "actions_pending": "{count} ação(ões) aguardando sua aprovação.",
        "actions_applied": "{count} ação(ões) aplicada(s).",
        "action_failed": (
            "A ação {index} ({tool}) falhou: {cause}. "
            "As ações aplicadas antes dela foram mantidas e podem ser desfeitas."
        ),
        "actions_stopped": "Interrompido após aplicar {count} ação(ões).",
        "actions_rejected": "As ações propostas foram descartadas.",
        "rejected_note": (
            "O usuário rejeitou estas ações propostas, então nada foi alterado: {summary}. "
            "Não as repita a menos que o usuário peça."
        ),
        "model_error": "Erro: {reason}",
        "truncated": (
            "Parei após {rounds} rodadas de ferramentas. "
            "Peça para continuar se ainda houver algo a fazer."
        ),
        "cancelled": "Cancelado.",
        "no_pending": "Não há ação pendente.",
        "undo_done": "{count} alteração(ões) revertida(s).",
        "undo_failed": "O desfazer parou após reverter {count} alteração(ões): {cause}",
        "nothing_to_undo": "Não há nada para desfazer.",
        "approved": "{count} alteração(ões) mantida(s).",
        "store_degraded": "O histórico não pôde ser aberto; esta sessão não será salva.",
    },
}


def get_message(key: str, language: str = DEFAULT_LANGUAGE, **params: Any) -> str:
    catalog = CATALOGS.get(language, CATALOGS[DEFAULT_LANGUAGE])
    template = catalog.get(key) or CATALOGS[DEFAULT_LANGUAGE][key]
    return template.format(**params)
