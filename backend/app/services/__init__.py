"""Services Layer — payment gateways, order ledger, discount validation, subscription scheduling.

Invariants:
    - Services own the IO around pure core decisions (DB reads/writes, provider HTTP)
    - Each service receives its dependencies explicitly (session, registry, event bus)

Design Decisions:
    - One entity owner per service: OrderLedger writes orders, SubscriptionScheduler
      writes subscriptions, DiscountValidator only reads
"""
