"""Wires the fulfillment services together for one Flask app."""
from app.services.after_sale_service import AfterSaleCaseManager
from app.services.balance_service import SellerBalanceLedger
from app.services.commission_service import CommissionEngine
from app.services.order_service import OrderLedger
from app.services.outbox_service import OutboxDispatcher
from app.services.shipping_service import ShippingTracker
from flask import current_app

EXTENSION_KEY = 'fulfillment'


class FulfillmentServices:

    def __init__(self, config, refund_handlers=None):
        self.commission = CommissionEngine.from_config(config)
        self.ledger = SellerBalanceLedger.from_config(config)
        self.outbox = OutboxDispatcher.from_config(
            config, handlers=refund_handlers)
        self.orders = OrderLedger(self.commission, self.ledger, self.outbox)
        self.shipping = ShippingTracker.from_config(config, self.orders)
        self.after_sales = AfterSaleCaseManager.from_config(
            config, self.orders, self.ledger, self.outbox)


def init_services(app, refund_handlers=None):
    services = FulfillmentServices(app.config, refund_handlers)
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> FulfillmentServices:
    return current_app.extensions[EXTENSION_KEY]
