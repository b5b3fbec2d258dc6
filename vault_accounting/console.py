"""Console output formatting."""

from datetime import datetime, timezone

from vault_accounting.apy import get_annual_reward
from vault_accounting.formatters import format_apy, format_eth, short_address
from vault_accounting.models import NetworkContext, Vault
from vault_accounting.tasks import TickSummary


def print_tick_summary(ctx: NetworkContext, vaults: list[Vault], summary: TickSummary) -> None:
    """Print the state of every vault after a tick."""
    ts = datetime.fromtimestamp(ctx.timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    print("=" * 70)
    print("📊 VAULT ACCOUNTING TICK")
    print(f"   🕐 {ts}  •  block={ctx.block_number}")
    print("=" * 70)

    for vault in sorted(vaults, key=lambda v: v.id):
        print(f"\n🏦 Vault: {vault.id} (v{vault.version})")
        print("   " + "─" * 50)
        print(f"   💰 Total assets: {format_eth(vault.total_assets, decimals=4, approx=True)}")
        print(f"   📈 APY: {format_apy(vault.apy)}  •  base {format_apy(vault.base_apy)}")
        annual = get_annual_reward(vault.total_assets, vault.apy)
        print(f"   🌱 Est. annual earnings: {format_eth(annual, decimals=4, approx=True)}")
        if vault.queued_shares or vault.exiting_assets:
            print(
                f"   🚪 Exit queue: {vault.queued_shares} queued shares  •  "
                f"{format_eth(vault.exiting_assets, decimals=4)} exiting"
            )
        print(f"   👛 Fee recipient: {short_address(vault.fee_recipient)}")

    print("\n" + "─" * 70)
    print(f"🌐 Network total assets: {format_eth(ctx.network.total_assets, decimals=4, approx=True)}")
    print(f"   Earned (all time): {format_eth(ctx.network.total_earned_assets, decimals=6)}")
    print(
        f"   Synced vaults: {summary.vaults_synced}  •  exit requests: {summary.exit_requests_updated}  •  "
        f"leverage positions: {summary.leverage_positions_updated}"
    )
    print(f"   Active distributions: {summary.distributions_active}  •  snapshots: {summary.snapshots_taken}")
    if summary.errors:
        print(f"   ⚠️  {len(summary.errors)} entity update(s) failed, see warnings above")
