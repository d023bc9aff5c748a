"""Message templates for autonomous trading notifications."""

AUTO_STARTED = (
    "🤖 <b>Autonomous trading enabled</b>\n\n"
    "Active rules: <b>{rule_count}</b>\n"
    "Buys left this hour: <b>{remaining}</b>/{limit}\n"
    "Checks run every {interval_minutes} min."
)

AUTO_STOPPED = "⏹ <b>Autonomous trading disabled</b>"

AUTO_SAFETY_DISABLED = (
    "⚠️ <b>Autonomous trading was turned off</b>\n\n"
    "Reason: {reason}\n"
    "Create an autonomous rule with take-profit and stop-loss, then enable it again."
)

AUTO_RATE_LIMITED = (
    "⏳ <b>Hourly buy limit reached</b>\n\n"
    "Buys left this hour: <b>{remaining}</b>/{limit}\n"
    "Next buy possible at: <b>{next_at}</b>\n"
    "Skipped opportunity: <code>{symbol}</code> (rule: {rule_name})"
)

AUTO_BUY_OK = (
    "✅ <b>Autonomous BUY</b>\n\n"
    "Token: <b>{symbol}</b>\n"
    "<code>{address}</code>\n"
    "Rule: {rule_name}\n"
    "Spent: <b>{amount:.6f} ETH</b>\n"
    "Entry price: <b>${price:.10g}</b>\n"
    "Tx: <code>{tx_hash}</code>\n"
    "Buys left this hour: {remaining}/{limit}"
)

AUTO_BUY_FAILED = (
    "❌ <b>Autonomous BUY failed</b>\n\n"
    "Token: <b>{symbol}</b>\n"
    "<code>{address}</code>\n"
    "Rule: {rule_name}\n"
    "Reason: {reason}"
)

AUTO_SELL_OK = (
    "💰 <b>Position closed ({reason})</b>\n\n"
    "Token: <b>{symbol}</b>\n"
    "<code>{address}</code>\n"
    "Entry: ${entry_price:.10g} → Exit: ${exit_price:.10g}\n"
    "PnL: <b>{pnl_percent:+.2f}%</b> ({pnl_eth:+.6f} ETH)\n"
    "Tx: <code>{tx_hash}</code>"
)

AUTO_SELL_FAILED = (
    "❌ <b>Closing position failed ({reason})</b>\n\n"
    "Token: <b>{symbol}</b>\n"
    "<code>{address}</code>\n"
    "Error: {error}\n"
    "The position stays open and will be retried on the next check."
)

AUTO_BUY_UNRECORDED = (
    "⚠️ <b>Autonomous BUY settled but was not recorded</b>\n\n"
    "Token: <b>{symbol}</b>\n"
    "<code>{address}</code>\n"
    "Rule: {rule_name}\n"
    "Tx: <code>{tx_hash}</code>\n"
    "Storage error: {error}\n"
    "The tokens are in the wallet but are not monitored for exits. Check them manually."
)

AUTO_SELL_UNRECORDED = (
    "⚠️ <b>Position sold ({reason}) but the close was not recorded</b>\n\n"
    "Token: <b>{symbol}</b>\n"
    "<code>{address}</code>\n"
    "Tx: <code>{tx_hash}</code>\n"
    "Storage error: {error}\n"
    "The position may be retried until storage recovers."
)
