__all__ = [
    # Session
    "Session",
    "Config",
    "load_config",
    # Components
    "RpcClient",
    "Planner",
    "TransactionBuilder",
    "sign_transaction",
    "decode_signed_payload",
    "Submission",
    "ConfirmationResult",
    "TxState",
    "Subscription",
    "SubscriptionState",
    "Backpressure",
    "SkippedEvent",
    "LogFilter",
    "PollingSource",
    "WebSocketSource",
    # Codec
    "AbiType",
    "FunctionSchema",
    "EventSchema",
    "EventField",
    "EventRegistry",
    "encode_call",
    "decode",
    "load_abi",
    "schemas_from_abi",
    # Models
    "Account",
    "FeeEstimate",
    "TxPlan",
    "UnsignedTx",
    "SignedTx",
    "Receipt",
    "LogEvent",
    "BlockHeader",
    "DecodedEvent",
    # Errors
    "KerykeionError",
    "ConfigError",
    "InvalidStateError",
    "RpcError",
    "ConnectivityError",
    "ProtocolError",
    "RpcApplicationError",
    "InsufficientFunds",
    "NonceConflict",
    "EstimationFailure",
    "FeeUnavailable",
    "ReceiptTimeout",
    "DecodeMismatch",
    "SubscriptionDropped",
    # Logging
    "configure_logging",
    "get_logger",
]

__version__ = "0.1.0"

from .config import Config, load_config
from .errors import (
    ConfigError,
    ConnectivityError,
    DecodeMismatch,
    EstimationFailure,
    FeeUnavailable,
    InsufficientFunds,
    InvalidStateError,
    KerykeionError,
    NonceConflict,
    ProtocolError,
    ReceiptTimeout,
    RpcApplicationError,
    RpcError,
    SubscriptionDropped,
)
from .logging import configure_logging, get_logger
from .pneuma.abi import (
    AbiType,
    EventField,
    EventRegistry,
    EventSchema,
    FunctionSchema,
    decode,
    encode_call,
    load_abi,
    schemas_from_abi,
)
from .pneuma.confirm import ConfirmationResult, Submission, TxState
from .pneuma.models import (
    Account,
    BlockHeader,
    DecodedEvent,
    FeeEstimate,
    LogEvent,
    Receipt,
    SignedTx,
    TxPlan,
    UnsignedTx,
)
from .pneuma.planner import Planner
from .pneuma.rpc import RpcClient
from .pneuma.sources import LogFilter, PollingSource, WebSocketSource
from .pneuma.subscribe import Backpressure, SkippedEvent, Subscription, SubscriptionState
from .pneuma.tx import TransactionBuilder, decode_signed_payload, sign_transaction
from .session import Session
