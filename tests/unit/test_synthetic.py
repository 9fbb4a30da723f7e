"""
Unit Tests for the Synthetic Progression Generator
"""
import ast
from pathlib import Path

import pytest

from ckd_monitor.simulation import ProgressionProfile, SyntheticProgressionGenerator
from ckd_monitor.simulation import progression as progression_module
from ckd_monitor.utils import ValidationError


class TestDeterminism:
    def test_same_seed_same_trajectory(self):
        a = SyntheticProgressionGenerator(seed=42).generate(55, 40, cycles=12)
        b = SyntheticProgressionGenerator(seed=42).generate(55, 40, cycles=12)
        assert a.to_dict() == b.to_dict()

    def test_different_seeds_differ(self):
        a = SyntheticProgressionGenerator(seed=1).generate(55, 40, cycles=12)
        b = SyntheticProgressionGenerator(seed=2).generate(55, 40, cycles=12)
        assert [c.egfr for c in a.cycles] != [c.egfr for c in b.cycles]


class TestCycleRange:
    @pytest.mark.parametrize("cycles", [0, 25, -1, 2.5, True])
    def test_out_of_range_rejected(self, cycles):
        with pytest.raises(ValidationError) as exc_info:
            SyntheticProgressionGenerator(seed=1, max_cycles=24).generate(55, cycles=cycles)
        assert exc_info.value.field == "cycles"

    def test_max_cycles_inclusive(self):
        trajectory = SyntheticProgressionGenerator(seed=1, max_cycles=24).generate(55, cycles=24)
        assert len(trajectory.cycles) == 25
        assert [c.cycle_number for c in trajectory.cycles] == list(range(25))

    def test_invalid_baseline_rejected(self):
        with pytest.raises(ValidationError):
            SyntheticProgressionGenerator(seed=1).generate(-3, cycles=6)


class TestValues:
    def test_values_never_fall_below_floor(self):
        generator = SyntheticProgressionGenerator(seed=3, max_cycles=24)
        trajectory = generator.generate(6, 6, cycles=24, profile=ProgressionProfile.RAPID)
        assert all(c.egfr >= 5 for c in trajectory.cycles)
        assert all(c.uacr >= 5 for c in trajectory.cycles)

    def test_missing_uacr_stays_missing(self):
        trajectory = SyntheticProgressionGenerator(seed=3).generate(70, None, cycles=6)
        assert all(c.uacr is None for c in trajectory.cycles)

    def test_cycles_are_classified(self):
        trajectory = SyntheticProgressionGenerator(seed=5).generate(55, 40, cycles=3)
        for cycle in trajectory.cycles:
            assert cycle.classification.egfr == cycle.egfr
        assert trajectory.final_state == trajectory.cycles[-1].classification.health_state

    @pytest.mark.parametrize("profile,egfr_range,uacr_range", [
        (ProgressionProfile.RAPID, (-1.00, -0.67), (0.03, 0.08)),
        (ProgressionProfile.IMPROVING, (0.02, 0.05), (-0.05, -0.02)),
        (ProgressionProfile.PROGRESSIVE, (-0.50, -0.25), (0.01, 0.03)),
        (ProgressionProfile.STABLE, (-0.12, -0.04), (-0.015, -0.005)),
    ])
    def test_profile_rates(self, profile, egfr_range, uacr_range):
        generator = SyntheticProgressionGenerator(seed=11)
        for _ in range(20):
            params = generator.draw_parameters(profile)
            assert params.profile == profile
            assert egfr_range[0] <= params.egfr_monthly_change <= egfr_range[1]
            assert uacr_range[0] <= params.uacr_monthly_change <= uacr_range[1]

    def test_drawn_profiles_cover_all_kinds(self):
        generator = SyntheticProgressionGenerator(seed=0)
        drawn = {generator.draw_parameters().profile for _ in range(500)}
        assert drawn == set(ProgressionProfile)


class TestIsolation:
    FORBIDDEN = (
        "ckd_monitor.storage",
        "ckd_monitor.core.alerts",
        "ckd_monitor.core.diagnosis",
        "ckd_monitor.core.progression",
        "ckd_monitor.core.uacr",
        "ckd_monitor.services",
        "sqlalchemy",
    )

    def test_generator_does_not_import_pipeline_modules(self):
        tree = ast.parse(Path(progression_module.__file__).read_text())
        imported = set()
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                imported.update(alias.name for alias in node.names)
            elif isinstance(node, ast.ImportFrom) and node.module:
                imported.add(node.module)

        for name in imported:
            assert not name.startswith(self.FORBIDDEN), name

    def test_service_generation_persists_nothing(self, service, store):
        trajectory = service.generate_synthetic_trajectory(55, 40, cycles=6, profile="stable")
        assert len(trajectory.cycles) == 7
        with store.unit_of_work() as uow:
            assert uow.list_patient_ids() == []
            assert uow.list_alerts() == []
            assert uow.list_actions() == []

    def test_service_rejects_unknown_profile(self, service):
        with pytest.raises(ValidationError):
            service.generate_synthetic_trajectory(55, profile="explosive")
