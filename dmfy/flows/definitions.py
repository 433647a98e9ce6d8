# /dmfy/flows/definitions.py

"""
Built-in flow definitions as pure data (no logic).

DEFAULT_FLOW is the universal DMFY script. It answers every tenant that has
not published a flow of its own, so the webhook is responsive from the first
deploy. It is a single hub node: every message is checked against the same
ordered keyword rules and the session stays on the hub.

The ticket rule sits ahead of the menu digits so that "2000" is read as a
ticket and not as option 2.
"""

from typing import Any, Dict

from dmfy.models.flow import FlowDefinition

DEFAULT_FLOW_KEY = "builtin"

FALLBACK_REPLY = "Beleza. Me dá mais um detalhe do que você vende e já te passo o melhor caminho."

DEFAULT_FLOW: Dict[str, Any] = {
    "id": "dmfy-universal",
    "name": "DMFY Universal Flow",
    "version": 1,
    "entryNodeId": "inicio",
    "fallbackTemplates": [FALLBACK_REPLY],
    "nodes": [
        {
            "id": "inicio",
            "matchRules": [
                {
                    "exact": ["start", "oi", "ola", "olá", "/start", "dmfy"],
                    "replies": [
                        "Fala! 👋 Eu sou o DMFY. Você quer vender (1) Mentoria, (2) Produto físico ou (3) Serviço?"
                    ],
                },
                {
                    "regex": r"(^|\s)(997|497|2000)(\s|$)",
                    "replies": [
                        "Perfeito. Vou te mostrar como fechamos isso nas DMs, passo a passo.",
                        "Quer receber um roteiro otimizado e já agendar um diagnóstico? (S/N)",
                    ],
                },
                {
                    "contains": ["1", "mentoria"],
                    "replies": [
                        "Top! Mentoria: me diga seu ticket (ex.: 497/997/2000) e se você tem prova social (S/N)."
                    ],
                },
                {
                    "contains": ["2", "produto"],
                    "replies": [
                        "Beleza. Produto físico: qual nicho? (ex.: saúde/beleza) e qual o principal benefício?"
                    ],
                },
                {
                    "contains": ["3", "serviço", "servico"],
                    "replies": [
                        "Show. Serviço: qual? (ex.: tráfego, social media, design) e onde você atende?"
                    ],
                },
                {
                    "exact": ["s", "sim"],
                    "replies": [
                        "Ótimo! Segue o passo: https://seu-checkout-ou-form.com",
                        "Se quiser falar com um especialista agora, digite: humano",
                    ],
                },
                {
                    "contains": ["humano"],
                    "replies": ["Um especialista foi acionado e vai te responder agora 😉"],
                },
            ],
            "fallbackTemplates": [FALLBACK_REPLY],
        }
    ],
}


def builtin_default_flow() -> FlowDefinition:
    return FlowDefinition.model_validate(DEFAULT_FLOW)
