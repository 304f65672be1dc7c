from .client import Client, ConnectionState, connect
from .config import ClientOptions
from .connection import StreamTransport, Transport
from .errors import (
    ConnectionClosed,
    ConnectRejectedError,
    DeliveryFailure,
    HandlerError,
    MQTTError,
    OperationTimeout,
    ProtocolError,
    PublishError,
    SubscriptionError,
    TransportError,
)
from .session import SessionState, Subscription
from .store import (
    DeliveryState,
    JsonFileStoreBackend,
    MemoryStoreBackend,
    MessageStore,
    PendingDelivery,
    StoreBackend,
)
from .topic import matches, validate_topic_filter, validate_topic_name
from .will_message import QoSLevel, WillMessage

__all__ = [
    'Client',
    'ConnectionState',
    'connect',
    'ClientOptions',
    'Transport',
    'StreamTransport',
    'MQTTError',
    'TransportError',
    'ProtocolError',
    'ConnectionClosed',
    'ConnectRejectedError',
    'OperationTimeout',
    'SubscriptionError',
    'PublishError',
    'DeliveryFailure',
    'HandlerError',
    'SessionState',
    'Subscription',
    'DeliveryState',
    'PendingDelivery',
    'MessageStore',
    'StoreBackend',
    'MemoryStoreBackend',
    'JsonFileStoreBackend',
    'matches',
    'validate_topic_filter',
    'validate_topic_name',
    'QoSLevel',
    'WillMessage',
]
