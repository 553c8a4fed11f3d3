"""Outbound message queue processor with CRM event synchronization.

This package provides the dispatch side of a messaging platform:

- Durable SQLite queue of outbound messages with atomic, leased claims
- Working-window and daily-quota guard per agent and account
- Delivery through an Evolution-style messaging gateway with retry and back-off
- CRM adapters (Pipedrive, Monday.com, HubSpot, Close, ActiveCampaign)
  fed by webhooks or cursor-based polling, de-duplicated by an event ledger
- Prometheus metrics and a FastAPI surface for an external scheduler

Example:
    Basic usage with the FastAPI application::

        from async_dispatch_service.core import DispatchService
        from async_dispatch_service.api import create_app

        core = DispatchService(db_path="/data/dispatch.db", gateway_url="http://evolution:8080")
        app = create_app(core, scheduler_secret="secret")
"""
