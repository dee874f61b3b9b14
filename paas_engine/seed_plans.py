# paas_engine/seed_plans.py
"""Seed the database with the default resource plans."""

from uuid import NAMESPACE_URL, uuid5

from paas_engine.bootstrap import create_container
from paas_engine.core.errors import AlreadyExistsError
from paas_engine.domain.models import Plan


def plan_id(name: str):
    """Stable ids so seeding twice is harmless."""
    return uuid5(NAMESPACE_URL, f"paas-plan:{name}")


DEFAULT_PLANS = [
    Plan(plan_id=plan_id("hobby"), name="hobby", cpu_millicores=250, memory_mb=256, storage_mb=512, max_replicas=1),
    Plan(plan_id=plan_id("standard"), name="standard", cpu_millicores=500, memory_mb=512, storage_mb=2048, max_replicas=3),
    Plan(plan_id=plan_id("performance"), name="performance", cpu_millicores=2000, memory_mb=2048, storage_mb=10240, max_replicas=10),
]


def main():
    print("🌱 Seeding plans...")
    print()

    plans = create_container().repositories.plans
    for plan in DEFAULT_PLANS:
        try:
            plans.create(plan)
            print(f"✅ Created {plan.name} plan ({plan.plan_id})")
        except AlreadyExistsError:
            print(f"⚠️  {plan.name} plan already exists")

    print()
    print("🎉 Plan seeding complete!")
    for plan in DEFAULT_PLANS:
        print(f"  - {plan.name}: {plan.cpu_millicores}m CPU, {plan.memory_mb}MB, up to {plan.max_replicas} replica(s)")


if __name__ == "__main__":
    main()
