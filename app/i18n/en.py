# -*- coding: utf-8 -*-
"""English (en) strings."""

LANG = {
    # Trial
    "trial.granted": "🎁 Your {days}-day trial is active.\n\nValid until: {expires_at}",

    # Activation
    "subscription.activated": (
        "✅ Your {plan} subscription is active.\n\n"
        "Valid until: {expires_at}\n"
        "Charged: {currency}{price}\n"
        "Discount used: {currency}{consumed}"
    ),
    "subscription.activated_operator": (
        "💳 Subscription activated\n\n"
        "Principal: {who}\n"
        "Plan: {plan}\n"
        "Price: {currency}{price} (base {currency}{base_price}, discount {currency}{consumed})\n"
        "Period: {starts_at} → {expires_at}"
    ),
    "subscription.gift": "🎁 You received {days} days of free access.\n\nValid until: {expires_at}",
    "subscription.gift_operator": "🎁 Gift granted\n\nPrincipal: {who}\nDays: {days}\nValid until: {expires_at}",

    # Referrals
    "referral.joined": "👋 {who} joined using your referral code.",
    "referral.reward": "🎉 Someone you invited just subscribed.\n\n{currency}{amount} discount credit was added to your balance.",

    # Renewal workflow
    "renewal.requested": "🕓 Your renewal request for the {plan} plan was received and is awaiting approval.",
    "renewal.requested_operator": "🕓 Renewal request\n\nPrincipal: {who}\nPlan: {plan}\nPrice: {currency}{price}",
    "renewal.rejected": "❌ Your renewal request for the {plan} plan was declined.",

    # Expiry
    "expiry.expired": "⌛ Your {plan} subscription expired on {expires_at}.",
    "expiry.expired_operator": "⌛ Subscription expired\n\nPrincipal: {who}\nPlan: {plan}\nExpired: {expires_at}",
}
