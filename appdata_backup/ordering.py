"""
Ordering of backup units.

The user order list names containers and groups (``__grp__<name>``). Units in
the list come first, in list order (or reversed for stopping); everything the
user never ordered follows in listing order, in both directions.
"""
from appdata_backup.models import BackupUnit, GROUP_PREFIX
from appdata_backup.state import MAIN


def sort_units(workloads, order, settings, reverse=False, remove_skipped=True, group_filter=None, log=None, ctx=MAIN):
    """Return the ordered list of BackupUnits for ``workloads``.

    Args:
        workloads: Workloads as listed by the runtime
        order: User order list (container names and ``__grp__`` group keys)
        settings: Resolved Settings
        reverse: Reverse the explicitly ordered units (stop order)
        remove_skipped: Drop containers configured with ``skip`` when named in ``order``
        group_filter: Restrict to these container names (group expansion); no
            group units are produced in that case
    """
    remaining = {}
    for workload in workloads:
        if group_filter is not None and workload.name not in group_filter:
            continue
        remaining[workload.name] = BackupUnit.for_workload(workload)

    if group_filter is None:
        for group_name, members in settings.get_container_groups().items():
            for member in members:
                remaining.pop(member, None)
            unit = BackupUnit.for_group(group_name)
            remaining[unit.order_key] = unit

    ordered = []
    for key in order or []:
        if not key.startswith(GROUP_PREFIX):
            if remove_skipped and settings.for_container(key).skip:
                if log and key in remaining:
                    log('DEBUG', f"Not adding {key} to sorted containers: should be ignored", ctx)
                remaining.pop(key, None)
                continue
        unit = remaining.pop(key, None)
        if unit is not None:
            ordered.append(unit)

    if reverse:
        ordered.reverse()
    return ordered + list(remaining.values())


def resolve_group(unit, workloads, settings, reverse=False, log=None, ctx=MAIN):
    """Expand a group unit into its ordered member units.

    Returns None for a container unit.
    """
    if not unit.is_group:
        return None
    members = settings.get_container_groups(unit.name)
    if log:
        log('DEBUG', f"Reached group: {unit.name}", ctx)
    units = sort_units(workloads, settings.group_order(unit.name), settings,
                       reverse=reverse, remove_skipped=True, group_filter=set(members), log=log, ctx=ctx)
    if log:
        log('DEBUG', f"Group containers: {', '.join(u.name for u in units)}", ctx)
    return units
