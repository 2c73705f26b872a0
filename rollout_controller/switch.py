from .admission import ready_in_group
from .errors import NoHealthyTarget
from .logger import get_logger


class TrafficSwitchController:
    """Blue/green cutover: moves the admission selector between groups.

    Only the selector changes. No instance is created or terminated and any
    rollout running in either group carries on untouched.
    """

    def __init__(self, store):
        self.store = store
        self.logger = get_logger(f"switch.{store.service}")

    def switch_to(self, group):
        current = self.store.selected_group
        if group == current:
            self.logger.debug(f"{group} already selected")
            return self.store.admission

        ready = ready_in_group(self.store.instances(group), group)
        if not ready:
            self.logger.warning(f"Refusing switch {current} -> {group}: no ready instances")
            raise NoHealthyTarget(self.store.service, group)

        self.store.select_group(group)
        self.logger.info(f"Switched {self.store.service} traffic {current} -> {group} "
                         f"({len(ready)} ready instances)")
        return self.store.admission
