"""Payment domain - Payment intents, gateway notifications, refunds and reconciliation"""
