"""
                        Services Module

Business services, each behind a factory that picks the development or
production implementation from ENV_MODE.

Services:
    - orders: order store, payments, lifecycle, channel rules
    - persistence: order repositories (in-memory, PostgreSQL)
    - realtime: room broadcast (local, Redis) and session tracking
    - auth: identity verification (dev tokens, JWT)
    - menu: item lookups for menu references
    - gateway: inbound event routing for the WebSocket channel
"""
