"""
Venue adapters behind the ExchangeClient contract.

Import concrete clients from their modules and build them through
signal_bridge.exchange_clients.factory.create_exchange_client.
"""
