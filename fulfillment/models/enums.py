from enum import Enum

class PriorityLevel(str, Enum):
    critical = 'critical'
    high = 'high'
    default = 'default'
    low = 'low'

    @classmethod
    def ranked(cls) -> list:
        """Highest priority first."""
        return [cls.critical, cls.high, cls.default, cls.low]

class JobStatus(str, Enum):
    pending = 'pending'
    scheduled = 'scheduled'
    processing = 'processing'
    retrying = 'retrying'
    completed = 'completed'
    failed = 'failed'

class TaskType(str, Enum):
    payment_process = 'payment:process'
    inventory_update = 'inventory:update'
    email_confirmation = 'email:confirmation'
    invoice_generate = 'invoice:generate'
    analytics_track = 'analytics:track'
    warehouse_notify = 'warehouse:notify'

class OrderStatus(str, Enum):
    pending = 'pending'
    payment_processing = 'payment_processing'
    payment_failed = 'payment_failed'
    confirmed = 'confirmed'
    processing = 'processing'
    shipped = 'shipped'
    delivered = 'delivered'
    cancelled = 'cancelled'

class PaymentStatus(str, Enum):
    pending = 'pending'
    processing = 'processing'
    completed = 'completed'
    failed = 'failed'
    refunded = 'refunded'

class PaymentMethod(str, Enum):
    credit_card = 'credit_card'
    debit_card = 'debit_card'
    bank_transfer = 'bank_transfer'
