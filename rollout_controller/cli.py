import argparse
import json
import asyncio
import sys
from dataclasses import asdict

from .config import service_config_from_dict
from .controller import ControlPlane
from .engine import RolloutEngine
from .errors import ControllerError
from .instance_manager import SimulatedInstanceManager
from .models import Instance, Phase, ProbeKind, ProbeResult
from .logger import setup_logging, get_logger


def load_state(path):
    """Read a service config and its instances from a JSON state file"""
    logger = get_logger("cli")
    try:
        with open(path) as f:
            data = json.load(f)
        config = service_config_from_dict(data["service"])
        instances = []
        for i in data.get("instances", []):
            instance = Instance(
                instance_id=i["instance_id"],
                version=i["version"],
                group=i.get("group", config.active_group),
                phase=Phase(i.get("phase", "Running")),
                ready=i.get("ready", True),
                alive=i.get("alive", True),
                host=i.get("host", "127.0.0.1"),
                port=i.get("port"),
            )
            if "created_at" in i:
                instance.created_at = i["created_at"]
            instances.append(instance)
        return config, instances
    except Exception as e:
        logger.error(f"Error loading state: {e}")
        raise


def save_state(path, config, instances):
    data = {
        "service": asdict(config),
        "instances": [
            {k: v for k, v in asdict(i).items() if k not in ("readiness", "liveness")}
            for i in instances
        ],
    }
    with open(path, "w") as f:
        json.dump(data, f, indent=2)


def build_control_plane(config, instances, instance_manager=None):
    control_plane = ControlPlane(instance_manager or SimulatedInstanceManager())
    controller = control_plane.add_service(config)
    for instance in instances:
        controller.register(instance)
    return control_plane, controller


def status_dict(status):
    result = asdict(status)
    if status.rollout_phase is not None:
        result["rollout_phase"] = status.rollout_phase.value
    return result


async def simulate_rollout(controller, new_version, max_unavailable=None, max_surge=None, group=None,
                           max_rounds=1000):
    """Drive a rollout where every new instance passes its probes as soon as it exists"""
    plan = controller.start_rollout(new_version, max_unavailable, max_surge, group=group)
    for _ in range(max_rounds):
        await controller.drain()
        if not plan.active:
            break
        for instance in controller.store.instances(plan.group):
            if instance.phase in (Phase.PENDING, Phase.RUNNING) and not instance.ready:
                controller.record_probe(ProbeResult(instance.instance_id, ProbeKind.LIVENESS, True))
                controller.record_probe(ProbeResult(instance.instance_id, ProbeKind.READINESS, True))
    else:
        controller.abort_rollout("simulation did not converge")
    await controller.drain()
    return plan


def plan_result(plan):
    return {
        "plan_id": plan.plan_id,
        "phase": plan.phase.value,
        "aborted_reason": plan.aborted_reason,
        "created": plan.created,
        "terminated": plan.terminated,
        "history": plan.history,
    }


def main():
    parser = argparse.ArgumentParser(description="Replica health and rollout controller")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="cmd", required=True)

    status = sub.add_parser("status")
    status.add_argument("--state", required=True)

    plan = sub.add_parser("plan")
    plan.add_argument("--replicas", type=int, required=True)
    plan.add_argument("--max-unavailable", type=int, default=0)
    plan.add_argument("--max-surge", type=int, default=1)
    plan.add_argument("--old-count", type=int)

    rollout = sub.add_parser("rollout")
    rollout.add_argument("--state", required=True)
    rollout.add_argument("--version", required=True)
    rollout.add_argument("--max-unavailable", type=int)
    rollout.add_argument("--max-surge", type=int)
    rollout.add_argument("--group")
    rollout.add_argument("--dry-run", action="store_true")

    switch = sub.add_parser("switch")
    switch.add_argument("--state", required=True)
    switch.add_argument("--group", required=True)

    args = parser.parse_args()
    setup_logging(args.log_level)

    if args.cmd == "plan":
        try:
            steps = RolloutEngine.plan_steps(args.replicas, args.max_unavailable, args.max_surge, args.old_count)
        except ValueError as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(json.dumps(steps, indent=2))
        return

    try:
        config, instances = load_state(args.state)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    async def run():
        control_plane, controller = build_control_plane(config, instances)

        if args.cmd == "status":
            print(json.dumps(status_dict(controller.status()), indent=2))
            return

        if args.cmd == "switch":
            controller.switch_to(args.group)
            config.active_group = controller.store.selected_group
            print(json.dumps(status_dict(controller.status()), indent=2))

        if args.cmd == "rollout":
            if args.dry_run:
                group = args.group or config.active_group
                old = [i for i in instances if i.group == group and i.version != args.version]
                new = [i for i in instances if i.group == group and i.version == args.version]
                replicas = config.replicas if config.replicas is not None else len(
                    [i for i in instances if i.group == group])
                steps = RolloutEngine.plan_steps(
                    replicas,
                    config.max_unavailable if args.max_unavailable is None else args.max_unavailable,
                    config.max_surge if args.max_surge is None else args.max_surge,
                    old_count=len(old), new_count=len(new))
                print(json.dumps({"dry_run": True, "steps": steps}, indent=2))
                return
            result = await simulate_rollout(controller, args.version, args.max_unavailable,
                                            args.max_surge, group=args.group)
            print(json.dumps(plan_result(result), indent=2))

        save_state(args.state, config, controller.store.instances())

    try:
        asyncio.run(run())
    except (ControllerError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
