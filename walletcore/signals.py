"""
In-process events emitted by the ledger core.

Receivers are connected in create_app(). Senders never depend on a
receiver succeeding: the ledger mutation is already committed when a
signal goes out.
"""

from blinker import Namespace

_signals = Namespace()

# sender: the completed Transaction
transaction_completed = _signals.signal('transaction-completed')

# sender: a NotificationEvent
notification_requested = _signals.signal('notification-requested')
