from .tenancy import Tenant, User, Session, DocumentSequence
from .catalog import Vendor, Customer, Item, Package
from .invoices import Invoice, InvoiceItem, Payment, PaymentTransaction
from .subscriptions import PackageSubscription
from .audit import AuditLog

__all__ = [
    'Tenant', 'User', 'Session', 'DocumentSequence',
    'Vendor', 'Customer', 'Item', 'Package',
    'Invoice', 'InvoiceItem', 'Payment', 'PaymentTransaction',
    'PackageSubscription',
    'AuditLog',
]
