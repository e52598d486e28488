"""
                        Services Module

Business logic of the order engine. Every service takes an AsyncSession
and an event publisher; external providers follow the hybrid pattern with
Mock (development) and Real (staging/production) implementations.

Services:
    - orders: Order state machine (create, transition, cancel, void, payment)
    - tables: Table session coordinator (session minting, token check, release)
    - inventory: Stock ledger (availability gate, deduct on serve, restore on void)
    - pricing: Subtotal, tax, tip and promo-code math
    - payment: Stripe and Safepay gateways, routing and webhook reconciliation
    - events: Outbound event contract (in-memory and Redis pub/sub)
"""
