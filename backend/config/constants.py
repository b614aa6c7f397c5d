# backend/config/constants.py
#
# All money values are integer paise.

# -----------------------------
# WALLET OWNERS
# -----------------------------

OWNER_USER = "user"
OWNER_RESTAURANT = "restaurant"
OWNER_DELIVERY = "delivery"
OWNER_ADMIN = "admin"

WALLET_OWNER_TYPES = {OWNER_USER, OWNER_RESTAURANT, OWNER_DELIVERY, OWNER_ADMIN}

ADMIN_WALLET_OWNER_ID = "platform"

# -----------------------------
# TRANSACTIONS
# -----------------------------

TX_ADDITION = "addition"
TX_DEDUCTION = "deduction"
TX_REFUND = "refund"
TX_COMMISSION = "commission"
TX_PLATFORM_FEE = "platform_fee"
TX_DELIVERY_FEE = "delivery_fee"
TX_GST = "gst"
TX_PAYMENT = "payment"
TX_WITHDRAWAL = "withdrawal"
TX_BONUS = "bonus"
TX_DEDUCTION_REVERSAL = "deduction_reversal"

DEBIT_TX_TYPES = {TX_DEDUCTION, TX_WITHDRAWAL}

# admin-side credit types, in posting order
ADMIN_EARNING_TX_TYPES = (TX_COMMISSION, TX_PLATFORM_FEE, TX_DELIVERY_FEE, TX_GST)

TX_PENDING = "Pending"
TX_COMPLETED = "Completed"
TX_FAILED = "Failed"
TX_CANCELLED = "Cancelled"

# -----------------------------
# SETTLEMENT / ESCROW
# -----------------------------

ESCROW_HELD = "held"
ESCROW_RELEASED = "released"
ESCROW_REFUNDED = "refunded"

SETTLEMENT_PENDING = "pending"
SETTLEMENT_COMPLETED = "completed"
SETTLEMENT_CANCELLED = "cancelled"

EARNING_PENDING = "pending"
EARNING_CREDITED = "credited"
EARNING_FAILED = "failed"
EARNING_CANCELLED = "cancelled"

REFUND_PENDING = "pending"
REFUND_INITIATED = "initiated"
REFUND_PROCESSED = "processed"
REFUND_FAILED = "failed"

# -----------------------------
# CANCELLATION STAGES
# -----------------------------

STAGE_PRE_ACCEPT = "pre_accept"
STAGE_POST_ACCEPT_PRE_COOK = "post_accept_pre_cook"
STAGE_POST_COOK = "post_cook"
STAGE_POST_PICKUP = "post_pickup"

# stages in which admin credits for the order are reversed
ADMIN_REVERSAL_STAGES = {STAGE_PRE_ACCEPT, STAGE_POST_ACCEPT_PRE_COOK}

POST_COOK_PLATFORM_FEE_REFUND_PERCENT = 50

# -----------------------------
# ORDERS
# -----------------------------

ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_PREPARING = "preparing"
ORDER_CANCELLED = "cancelled"

AUTO_REJECT_STATUSES = (ORDER_PENDING, ORDER_CONFIRMED)
AUTO_REJECT_REASON = "Auto-rejected: restaurant did not respond in time"

PAYMENT_RAZORPAY = "razorpay"
PAYMENT_UPI = "upi"
PAYMENT_CARD = "card"
PAYMENT_WALLET = "wallet"
PAYMENT_COD = "cod"

ONLINE_PAYMENT_METHODS = {PAYMENT_RAZORPAY, PAYMENT_UPI, PAYMENT_CARD}

# -----------------------------
# COMMISSION
# -----------------------------

COMMISSION_PERCENTAGE = "percentage"
COMMISSION_AMOUNT = "amount"

# used when no delivery commission band is configured
DELIVERY_FALLBACK_BASE_PAYOUT = 1000          # 10 INR
DELIVERY_FALLBACK_PER_KM = 500                # 5 INR / km
DELIVERY_FALLBACK_MIN_DISTANCE_KM = 4
