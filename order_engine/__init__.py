"""
                Order Engine

Server-owned order lifecycle and payment reconciliation for a restaurant
counter: local, delivery and takeaway orders, mixed cash/yape/card tenders,
and real-time fan-out to every connected terminal.
"""

__version__ = "1.0.0"
