from walletcore.jobs.scheduled_transfers import ScheduledTransferJob

__all__ = ['ScheduledTransferJob']
