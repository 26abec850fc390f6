from oae.models.address import WatchedAddress
from oae.models.deposit import Deposit, DepositState, OutboundTx
from oae.models.rule import AutoSettlementRule, SettlementExecution
from oae.models.payout import Payout, PayoutStatus, PayoutPriority, SYSTEM_PRINCIPAL
from oae.models.security import TransactionPin, SecurityEvent
from oae.models.dead_letter import DeadLetter
