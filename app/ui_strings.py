from __future__ import annotations

from typing import Dict, List


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Plataforma Fiscal",
    "emission": "NF-e",
    "cancellation": "Cancelamento",
    "correction_letter": "Carta de correcao",
    "job": "Tarefa",
}


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "emissao": [
        {
            "key": "draft",
            "label": "Rascunho",
            "description": "NF-e criada, ainda sem assinatura digital.",
        },
        {
            "key": "signed_offline",
            "label": "Assinada",
            "description": "XML gerado e assinado, aguardando envio para a SEFAZ.",
        },
        {
            "key": "queued",
            "label": "Na fila",
            "description": "Envio para a SEFAZ agendado.",
        },
        {
            "key": "processing",
            "label": "Em processamento",
            "description": "Lote recebido pela SEFAZ, aguardando retorno.",
        },
        {
            "key": "authorized",
            "label": "Autorizada",
            "description": "Uso autorizado pela SEFAZ com protocolo.",
        },
        {
            "key": "denied",
            "label": "Denegada",
            "description": "Uso denegado pela SEFAZ.",
        },
        {
            "key": "rejected",
            "label": "Rejeitada",
            "description": "SEFAZ rejeitou o documento. Corrija os dados e emita novamente.",
        },
        {
            "key": "cancelled",
            "label": "Cancelada",
            "description": "Cancelamento homologado pela SEFAZ.",
        },
    ],
    "solicitacao": [
        {
            "key": "pending",
            "label": "Pendente",
            "description": "Solicitacao registrada, aguardando processamento.",
        },
        {
            "key": "processing",
            "label": "Processando",
            "description": "Evento em transmissao para a SEFAZ.",
        },
        {
            "key": "processed",
            "label": "Processada",
            "description": "Evento registrado pela SEFAZ.",
        },
        {
            "key": "failed",
            "label": "Falhou",
            "description": "Evento nao registrado. Reenvio manual necessario.",
        },
    ],
    "tarefa": [
        {"key": "pending", "label": "Pendente", "description": "Aguardando execucao."},
        {"key": "processing", "label": "Executando", "description": "Em execucao por um worker."},
        {"key": "completed", "label": "Concluida", "description": "Executada com sucesso."},
        {"key": "failed", "label": "Falhou", "description": "Tentativas esgotadas ou erro definitivo."},
    ],
}


UI_TEXTS: Dict[str, str] = {
    "health.worker.idle": "Fila sem pendencias.",
    "health.worker.stalled": "Fila com pendencias sem processamento recente.",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "emission_queued": "NF-e assinada e enviada para a fila de transmissao.",
        "cancellation_queued": "Cancelamento registrado. A SEFAZ sera consultada em seguida.",
        "correction_letter_queued": "Carta de correcao registrada. A SEFAZ sera consultada em seguida.",
        "status_sync_queued": "Consulta de situacao agendada.",
        "request_retriggered": "Solicitacao reenviada para processamento.",
    },
    "error": {
        "action_invalid": "Acao invalida para esta operacao.",
        "auth_required": "Autenticacao necessaria.",
        "auth_invalid_credentials": "Credenciais invalidas. Tente novamente.",
        "validation_error": "Dados invalidos para esta operacao.",
        "identifier_required": "Informe emissionId, accessKey ou documentId.",
        "reason_invalid": "Justificativa deve ter entre 15 e 255 caracteres.",
        "correction_text_invalid": "Texto da correcao deve ter entre 15 e 1000 caracteres.",
        "document_invalid": "Documento fiscal incompleto ou invalido.",
        "access_key_invalid": "Chave de acesso invalida.",
        "permission_denied": "Voce nao possui permissao para executar esta acao.",
        "not_found": "Registro nao encontrado.",
        "emission_not_found": "NF-e nao encontrada.",
        "job_not_found": "Tarefa nao encontrada.",
        "request_not_found": "Solicitacao nao encontrada.",
        "precondition_failed": "O estado atual do documento nao permite esta operacao.",
        "emission_not_authorized": "Somente NF-e autorizada permite esta operacao.",
        "emission_not_queueable": "NF-e precisa estar assinada para entrar na fila de transmissao.",
        "emission_state_conflict": "Retorno da SEFAZ conflita com a situacao registrada. Verifique as anomalias.",
        "request_kind_invalid": "Tipo de solicitacao invalido.",
        "protocol_unavailable": "NF-e sem protocolo de autorizacao (nProt) disponivel. Operacao recusada.",
        "correction_letter_limit": "Limite de cartas de correcao atingido para esta NF-e.",
        "certificate_unavailable": "Certificado digital da empresa indisponivel ou invalido.",
        "conflict": "Operacao em conflito com o estado atual.",
        "emission_already_cancelled": "NF-e ja esta cancelada.",
        "cancellation_already_requested": "Ja existe cancelamento registrado para esta NF-e.",
        "request_not_retriggerable": "Somente solicitacoes com falha podem ser reenviadas.",
        "job_not_requeueable": "Somente tarefas com falha podem ser reenfileiradas.",
        "enqueue_failed": "Falha ao enfileirar processamento.",
        "sefaz_rejected": "A SEFAZ rejeitou a solicitacao. Revise os dados.",
        "sefaz_temporarily_unavailable": "Nao conseguimos falar com a SEFAZ agora. Tente novamente em instantes.",
        "unexpected_error": "Nao foi possivel concluir a operacao. Tente novamente em instantes.",
    },
}


def status_items_for_group(group: str) -> List[Dict[str, str]]:
    return list(STATUS_GROUPS.get(group, []))


def get_ui_text(key: str, default: str | None = None) -> str:
    if key in UI_TEXTS:
        return UI_TEXTS[key]
    if default is not None:
        return default
    return key


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def status_payload(group: str, status: str | None) -> Dict[str, str]:
    key = str(status or "").strip().lower()
    meta = next((item for item in STATUS_GROUPS.get(group, []) if item["key"] == key), None)
    if meta is None:
        return {"key": key, "label": key, "description": ""}
    return dict(meta)
