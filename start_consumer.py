#!/usr/bin/env python3
"""
Startup script for the RabbitMQ reconciliation consumer.

Run as a separate process from the API:

    python3 start_consumer.py

Queued ``reconciliation:run`` requests are executed here one at a time.
"""
from dotenv import load_dotenv

load_dotenv()

from membership_billing.messaging.reconciliation_consumer import main

if __name__ == "__main__":
    print("=" * 80)
    print("MEMBERSHIP BILLING - Reconciliation Consumer")
    print("=" * 80)
    print("Press CTRL+C to stop the consumer.")
    print()

    main()
