# Package initialization

# This file ensures that all task modules are properly imported
from otp_delivery.tasks.delivery_tasks import send_code_task, report_status_task

# Export the task names for easy importing elsewhere
__all__ = ['send_code_task', 'report_status_task']
