# cbots/i18n.py
from __future__ import annotations

from typing import Dict


def normalize_lang(code: str | None) -> str:
    """
    Normalizes a language code (pt-BR, en-US, ...) to the short values we
    carry texts for: pt / en
    """
    if not code:
        return "en"

    code = code.lower()

    if code.startswith("pt"):
        return "pt"

    return "en"


# === texts per language ===
LANG_DATA: Dict[str, Dict[str, str]] = {
    "en": {
        # ----- account -----
        "VERIFY_EMAIL_TITLE": "Verify your email address",
        "VERIFY_EMAIL_BODY": "Hello {name}, open the link to verify your email.",
        "SIGNUP_BONUS_TITLE": "Welcome bonus",
        "SIGNUP_BONUS_BODY": "You received {amount} {currency} as a signup bonus.",
        "SIGNUP_BONUS_DESC": "Signup bonus",

        # ----- deposits -----
        "DEPOSIT_APPROVED_TITLE": "Deposit approved",
        "DEPOSIT_APPROVED_BODY": "Your deposit of {amount} {currency} was credited.",
        "DEPOSIT_APPROVED_DESC": "Deposit approved (ID: {request_id})",
        "DEPOSIT_REJECTED_TITLE": "Deposit rejected",
        "DEPOSIT_REJECTED_BODY": "Your deposit of {amount} {currency} was rejected: {reason}",

        # ----- withdrawals -----
        "WITHDRAWAL_REQUESTED_DESC": "Withdrawal request to {destination}",
        "WITHDRAWAL_APPROVED_TITLE": "Withdrawal sent",
        "WITHDRAWAL_APPROVED_BODY": "Your withdrawal of {amount} {currency} was sent.",
        "WITHDRAWAL_REJECTED_TITLE": "Withdrawal rejected",
        "WITHDRAWAL_REJECTED_BODY": (
            "Your withdrawal of {amount} {currency} was rejected and refunded: {reason}"
        ),
        "WITHDRAWAL_REJECTED_DESC": "Withdrawal rejected: {reason}",

        # ----- referrals -----
        "REFERRAL_QUALIFIED_TITLE": "New qualified referral",
        "REFERRAL_QUALIFIED_BODY": "One of your referrals made a first deposit. Qualified referrals: {count}.",
        "REFERRAL_MILESTONE_TITLE": "Referral milestone reached",
        "REFERRAL_MILESTONE_BODY": "You reached {milestone} qualified referrals and earned {amount} {currency}.",
        "REFERRAL_MILESTONE_DESC": "Referral milestone reached: {milestone} qualified referrals",
        "REFERRAL_FIRST_BUY_DESC": "Referral first bot purchase bonus ({referred})",
        "REFERRAL_PROFIT_SHARE_DESC": "Referral profit share from bot #{bot_id}",

        # ----- bots -----
        "BOT_PURCHASE_DESC": "Purchase of bot {name}",
        "BOT_PURCHASED_TITLE": "Bot activated",
        "BOT_PURCHASED_BODY": "Your bot {name} is active for {days} days.",
        "BOT_PROFIT_DESC": "Daily profit of bot #{bot_id} ({name}), day {day}/{days}",
        "BOT_EXPIRED_TITLE": "Bot finished",
        "BOT_EXPIRED_BODY": "Your bot #{bot_id} finished its cycle. Total profit: {total} {currency}.",
    },
    "pt": {
        # ----- account -----
        "VERIFY_EMAIL_TITLE": "Verifique seu endereço de email",
        "VERIFY_EMAIL_BODY": "Olá {name}, clique no link para verificar seu email.",
        "SIGNUP_BONUS_TITLE": "Bônus de cadastro",
        "SIGNUP_BONUS_BODY": "Você ganhou {amount} {currency} de bônus de cadastro.",
        "SIGNUP_BONUS_DESC": "Bônus de Cadastro",

        # ----- deposits -----
        "DEPOSIT_APPROVED_TITLE": "Depósito aprovado",
        "DEPOSIT_APPROVED_BODY": "Seu depósito de {amount} {currency} foi creditado.",
        "DEPOSIT_APPROVED_DESC": "Depósito aprovado (ID: {request_id})",
        "DEPOSIT_REJECTED_TITLE": "Depósito rejeitado",
        "DEPOSIT_REJECTED_BODY": "Seu depósito de {amount} {currency} foi rejeitado: {reason}",

        # ----- withdrawals -----
        "WITHDRAWAL_REQUESTED_DESC": "Pedido de saque para {destination}",
        "WITHDRAWAL_APPROVED_TITLE": "Saque enviado",
        "WITHDRAWAL_APPROVED_BODY": "Seu saque de {amount} {currency} foi enviado.",
        "WITHDRAWAL_REJECTED_TITLE": "Saque rejeitado",
        "WITHDRAWAL_REJECTED_BODY": (
            "Seu saque de {amount} {currency} foi rejeitado e estornado: {reason}"
        ),
        "WITHDRAWAL_REJECTED_DESC": "Saque rejeitado: {reason}",

        # ----- referrals -----
        "REFERRAL_QUALIFIED_TITLE": "Nova indicação qualificada",
        "REFERRAL_QUALIFIED_BODY": "Um indicado seu fez o primeiro depósito. Indicações qualificadas: {count}.",
        "REFERRAL_MILESTONE_TITLE": "Meta de indicações atingida",
        "REFERRAL_MILESTONE_BODY": "Você atingiu {milestone} indicações qualificadas e ganhou {amount} {currency}.",
        "REFERRAL_MILESTONE_DESC": "Meta de indicações atingida: {milestone} indicações qualificadas",
        "REFERRAL_FIRST_BUY_DESC": "Bônus de primeira compra do indicado ({referred})",
        "REFERRAL_PROFIT_SHARE_DESC": "Participação no lucro do robô #{bot_id} do indicado",

        # ----- bots -----
        "BOT_PURCHASE_DESC": "Compra do robô {name}",
        "BOT_PURCHASED_TITLE": "Robô ativado",
        "BOT_PURCHASED_BODY": "Seu robô {name} está ativo por {days} dias.",
        "BOT_PROFIT_DESC": "Lucro diário do robô #{bot_id} ({name}), dia {day}/{days}",
        "BOT_EXPIRED_TITLE": "Robô finalizado",
        "BOT_EXPIRED_BODY": "Seu robô #{bot_id} concluiu o ciclo. Lucro total: {total} {currency}.",
    },
}


def t(lang: str | None, key: str) -> str:
    """
    Simple lookup:
    1. try lang
    2. if missing, fall back to en
    3. if still missing, return the key itself
    """
    lang = normalize_lang(lang)
    data = LANG_DATA.get(lang, {})
    if key in data:
        return data[key]
    data_en = LANG_DATA.get("en", {})
    if key in data_en:
        return data_en[key]
    return key


def tf(lang: str | None, key: str, **kwargs) -> str:
    return t(lang, key).format(**kwargs)
