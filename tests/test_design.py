"""Tests for design specifications, design matrices and contrasts."""
import pytest
import pandas as pd
import numpy as np

from count_data import SampleMetadata
from design import DesignError, DesignSpecification, Term


@pytest.fixture
def paired_metadata():
    samples = [f"{c}_{d}" for c in ["c1", "c2", "c3", "c4"] for d in ["untrt", "trt"]]
    df = pd.DataFrame(
        {
            "cell": [s.split("_")[0] for s in samples],
            "dex": [s.split("_")[1] for s in samples],
            "age": [30.0, 30.0, 41.0, 41.0, 52.0, 52.0, 60.0, 60.0],
        },
        index=samples,
    )
    return SampleMetadata.from_dataframe(df)


def test_formula_parsing():
    spec = DesignSpecification.from_formula("~ cell + dex")
    assert [t.label for t in spec.terms] == ["cell", "dex"]
    assert spec.formula == "~ cell + dex"

    spec = DesignSpecification.from_formula("~ a * b")
    assert [t.label for t in spec.terms] == ["a", "b", "a:b"]
    assert spec.terms[2] == Term(("a", "b"), interaction=True)


def test_formula_rejects_invalid_names():
    with pytest.raises(DesignError):
        DesignSpecification.from_formula("~ log(x)")
    with pytest.raises(DesignError):
        DesignSpecification.from_formula("~ ")


def test_compile_treatment_coding(paired_metadata):
    spec = DesignSpecification.from_formula("~ cell + dex", reference_levels={"dex": "untrt"})
    design = spec.compile(paired_metadata)
    assert design.coef_names == (
        "Intercept", "cell[T.c2]", "cell[T.c3]", "cell[T.c4]", "dex[T.trt]",
    )
    assert design.n_samples == 8
    assert design.residual_df == 3
    np.testing.assert_array_equal(design.matrix[:, -1], [0, 1, 0, 1, 0, 1, 0, 1])
    np.testing.assert_array_equal(design.matrix[:, 0], np.ones(8))


def test_default_reference_is_alphabetical(paired_metadata):
    design = DesignSpecification.from_formula("~ dex").compile(paired_metadata)
    assert design.coef_names == ("Intercept", "dex[T.untrt]")


def test_categorical_order_sets_reference(paired_metadata):
    metadata = paired_metadata.relevel("dex", "untrt")
    design = DesignSpecification.from_formula("~ dex").compile(metadata)
    assert design.coef_names == ("Intercept", "dex[T.trt]")


def test_with_reference_changes_baseline(paired_metadata):
    spec = DesignSpecification.from_formula("~ cell + dex")
    releveled = spec.with_reference("dex", "untrt").with_reference("cell", "c3")
    assert spec.reference_levels == {}
    assert releveled.reference_levels == {"dex": "untrt", "cell": "c3"}
    design = releveled.compile(paired_metadata)
    assert design.coef_names == (
        "Intercept", "cell[T.c1]", "cell[T.c2]", "cell[T.c4]", "dex[T.trt]",
    )

    with pytest.raises(DesignError):
        spec.with_reference("dex", "high").compile(paired_metadata)


def test_continuous_covariate(paired_metadata):
    design = DesignSpecification.from_formula("~ age + dex").compile(paired_metadata)
    assert "age" in design.coef_names
    assert design.continuous == ("age",)


def test_interaction_columns_are_products(paired_metadata):
    metadata = paired_metadata.with_column("batch", ["a", "a", "b", "b", "a", "a", "b", "b"])
    design = DesignSpecification.from_formula("~ batch * dex").compile(metadata)
    df = design.to_dataframe()
    np.testing.assert_array_equal(
        df["batch[T.b]:dex[T.untrt]"], df["batch[T.b]"] * df["dex[T.untrt]"]
    )


def test_single_level_factor_rejected(paired_metadata):
    metadata = paired_metadata.with_column("site", ["x"] * 8)
    with pytest.raises(DesignError):
        DesignSpecification.from_formula("~ site").compile(metadata)


def test_rank_deficient_design_rejected(paired_metadata):
    metadata = paired_metadata.with_column("copy", paired_metadata.column("dex").tolist())
    with pytest.raises(DesignError) as excinfo:
        DesignSpecification.from_formula("~ dex + copy").compile(metadata)
    assert "full rank" in str(excinfo.value)


def test_too_many_coefficients_rejected(paired_metadata):
    metadata = paired_metadata.with_column("batch", ["a", "b", "b", "a", "a", "b", "b", "a"])
    with pytest.raises(DesignError) as excinfo:
        DesignSpecification.from_formula("~ cell * dex + batch").compile(metadata)
    assert excinfo.value.details["n_coefs"] == 9


def test_missing_covariate_rejected(paired_metadata):
    with pytest.raises(DesignError) as excinfo:
        DesignSpecification.from_formula("~ batch").compile(paired_metadata)
    assert excinfo.value.details["missing"] == ["batch"]


def test_factor_contrast_vectors(paired_metadata):
    design = DesignSpecification.from_formula("~ cell + dex").compile(paired_metadata)

    vec, name = design.contrast_vector(("cell", "c3", "c1"))
    assert name == "cell_c3_vs_c1"
    np.testing.assert_array_equal(vec, [0, 0, 1, 0, 0])

    vec, _ = design.contrast_vector(("cell", "c2", "c4"))
    np.testing.assert_array_equal(vec, [0, 1, 0, -1, 0])

    vec, name = design.contrast_vector("dex[T.untrt]")
    assert name == "dex[T.untrt]"
    np.testing.assert_array_equal(vec, [0, 0, 0, 0, 1])

    vec, _ = design.contrast_vector([0, 0, 0, 0, -1])
    assert vec[-1] == -1


@pytest.mark.parametrize(
    "contrast",
    [("cell", "c9", "c1"), ("dose", "a", "b"), "cell[T.c9]", [0, 0, 0, 0, 0], [1, 0]],
)
def test_invalid_contrasts_rejected(paired_metadata, contrast):
    design = DesignSpecification.from_formula("~ cell + dex").compile(paired_metadata)
    with pytest.raises(DesignError):
        design.contrast_vector(contrast)


def test_replicates_per_sample(paired_metadata):
    design = DesignSpecification.from_formula("~ dex").compile(paired_metadata)
    assert list(design.replicates_per_sample()) == [4] * 8

    paired = DesignSpecification.from_formula("~ cell + dex").compile(paired_metadata)
    assert list(paired.replicates_per_sample()) == [1] * 8


def test_drop_terms():
    spec = DesignSpecification.from_formula("~ cell + dex")
    assert spec.drop_terms("dex").formula == "~ cell"
    with pytest.raises(DesignError):
        spec.drop_terms("batch")
