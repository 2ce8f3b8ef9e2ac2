from ap_recon.models.audit import AuditRecord
from ap_recon.models.purchase_order import PurchaseOrder
from ap_recon.models.goods_receipt import GoodsReceipt
from ap_recon.models.invoice import Invoice, InvoiceStatusTimeline
from ap_recon.models.matching import ThreeWayMatch
from ap_recon.models.exception_record import InvoiceException
from ap_recon.models.staleness import InvoiceStaleness
from ap_recon.models.rule import AutoApprovalRule, AutoApprovalLog
from ap_recon.models.claim import EmployeeClaim, TenantAccess
from ap_recon.models.notification import Notification
from ap_recon.models.config_layer import ConfigLayer
from ap_recon.db.immutability import register_immutability_listeners

register_immutability_listeners()

__all__ = [
    "AuditRecord",
    "PurchaseOrder",
    "GoodsReceipt",
    "Invoice", "InvoiceStatusTimeline",
    "ThreeWayMatch",
    "InvoiceException",
    "InvoiceStaleness",
    "AutoApprovalRule", "AutoApprovalLog",
    "EmployeeClaim", "TenantAccess",
    "Notification",
    "ConfigLayer",
]
