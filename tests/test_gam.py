import numpy as np
import pandas as pd
import pytest

from foresthealth.evaluate import aic_difference, predicted_class, accuracy, confusion_table
from foresthealth.gam import ConvergenceError, fit
from foresthealth.graph import AlignmentError
from foresthealth.ocat import OrderedCategorical
from foresthealth.terms import ModelSpec, ParametricTerm, SmoothTerm, add_term

LABELS = ["low", "med", "high"]


def _ordered(codes):
    return pd.Categorical.from_codes(np.asarray(codes), categories=LABELS, ordered=True)


@pytest.fixture(scope="module")
def smooth_data():
    rng = np.random.default_rng(11)
    n = 300
    x = rng.uniform(0, 1, n)
    f = rng.choice(["a", "b"], n)
    latent = 1.5 * np.sin(2 * np.pi * x) + 0.8 * (f == "b") + rng.logistic(size=n)
    codes = np.digitize(latent, [-0.7, 0.9])
    return pd.DataFrame({"x": x, "f": pd.Categorical(f), "cls": _ordered(codes)})


@pytest.fixture(scope="module")
def smooth_spec():
    return ModelSpec("cls", parametric=[ParametricTerm("f", "factor")], smooths=[SmoothTerm("x", k=8)],
                     family=OrderedCategorical(3))


@pytest.fixture(scope="module")
def smooth_model(smooth_spec, smooth_data):
    return fit(smooth_spec, smooth_data, method="REML")


def test_parametric_fit_matches_statsmodels_ordered_logit():
    from statsmodels.miscmodels.ordinal_model import OrderedModel

    rng = np.random.default_rng(5)
    n = 400
    x1 = rng.normal(size=n)
    f = rng.choice(["a", "b", "c"], n)
    latent = 1.2 * x1 - 0.7 * (f == "b") + 0.5 * (f == "c") + rng.logistic(size=n)
    codes = np.digitize(latent, [-0.5, 1.0])
    df = pd.DataFrame({"x1": x1, "f": pd.Categorical(f), "cls": _ordered(codes)})

    spec = ModelSpec("cls", parametric=[ParametricTerm("x1"), ParametricTerm("f", "factor")])
    model = fit(spec, df)

    exog = np.column_stack([x1, (f == "b").astype(float), (f == "c").astype(float)])
    res = OrderedModel(codes, exog, distr="logit").fit(method="bfgs", maxiter=5000, disp=False)
    cuts = res.model.transform_threshold_params(res.params)[1:-1]

    np.testing.assert_allclose(model.coef_.values, res.params[:3], atol=1e-3)
    np.testing.assert_allclose(model.thresholds_, cuts, atol=1e-3)
    assert model.loglik_ == pytest.approx(res.llf, abs=1e-4)
    assert model.edf_total_ == pytest.approx(5.0, abs=1e-6)


def test_probabilities_are_on_the_simplex(smooth_model, smooth_data):
    prob = smooth_model.predict(smooth_data, type="response")
    assert prob.shape == (len(smooth_data), 3)
    assert np.all(prob >= 0) and np.all(prob <= 1)
    np.testing.assert_allclose(prob.sum(axis=1), 1.0, atol=1e-6)


def test_link_prediction_and_exclude(smooth_model, smooth_data):
    eta = smooth_model.predict(smooth_data, type="link")
    eta_no_x = smooth_model.predict(smooth_data, type="link", exclude=["s(x)"])
    contrib = smooth_model.smooth_estimate("s(x)")
    assert eta.shape == (len(smooth_data),)
    assert not np.allclose(eta, eta_no_x)
    # removing s(x) leaves only the factor contribution
    assert len(np.unique(np.round(eta_no_x, 10))) == 2
    assert contrib["fit"].abs().max() > 0.3
    with pytest.raises(ValueError, match="unknown terms"):
        smooth_model.predict(smooth_data, exclude=["s(z)"])


def test_smooth_is_wiggly_and_reported(smooth_model):
    assert smooth_model.edf_["s(x)"] > 1.5
    assert smooth_model.sp_["s(x)"] > 0
    assert smooth_model.thresholds_[0] < smooth_model.thresholds_[1]
    param, smooth = smooth_model.summary()
    assert list(smooth.index) == ["s(x)"]
    assert {"fb", "theta1", "theta2"} <= set(param.index)
    assert np.isfinite(smooth_model.reml_)


def test_smooth_estimate_band_with_mean(smooth_model):
    plain = smooth_model.smooth_estimate("s(x)", n=50)
    wide = smooth_model.smooth_estimate("s(x)", n=50, with_mean=True)
    assert list(plain.columns) == ["x", "fit", "se", "lower", "upper"]
    assert np.all(plain["lower"] <= plain["fit"]) and np.all(plain["fit"] <= plain["upper"])
    np.testing.assert_allclose(plain["fit"], wide["fit"])
    assert wide["se"].min() > 0
    with pytest.raises(ValueError, match="not a smooth"):
        smooth_model.smooth_estimate("f")


def test_unseen_factor_level_is_fatal(smooth_model):
    new = pd.DataFrame({"x": [0.5], "f": ["z"]})
    with pytest.raises(ValueError, match="not present"):
        smooth_model.predict(new)


def test_confusion_totals_and_accuracy(smooth_model, smooth_data):
    pred = predicted_class(smooth_model.predict(smooth_data))
    tab = confusion_table(pred, smooth_data["cls"])
    acc = accuracy(smooth_data["cls"], pred)
    assert tab.values.sum() == len(smooth_data)
    assert np.trace(tab.values) / tab.values.sum() == pytest.approx(acc)
    assert acc > 1 / 3


def test_fit_is_deterministic_across_thread_hints(smooth_spec, smooth_data):
    a = fit(smooth_spec, smooth_data, control={"nthreads": 1})
    b = fit(smooth_spec, smooth_data, control={"nthreads": 3})
    c = fit(smooth_spec, smooth_data, control={"nthreads": 1})
    assert a.aic() == pytest.approx(b.aic(), rel=1e-10)
    assert a.aic() == c.aic()
    assert a.sp_["s(x)"] == pytest.approx(b.sp_["s(x)"], rel=1e-8)


def test_fit_rejects_bad_arguments(smooth_spec, smooth_data):
    with pytest.raises(ValueError, match="REML"):
        fit(smooth_spec, smooth_data, method="GCV")
    with pytest.raises(ValueError, match="control"):
        fit(smooth_spec, smooth_data, control={"threads": 2})
    with pytest.raises(ValueError, match="missing columns"):
        fit(smooth_spec, smooth_data.drop(columns=["f"]))


# ---------------- no spatial structure: 3 units x 5 years ----------------
def _three_units():
    # every unit has the same (x, class) pairs, so a unit effect has nothing to explain
    x = [-2.0, -1.0, 0.0, 1.0, 2.0]
    cls = [0, 1, 0, 2, 1]
    rows = []
    for unit in ["1", "2", "3"]:
        for year, (xi, ci) in enumerate(zip(x, cls), start=2000):
            rows.append({"id": unit, "year": year, "x": xi, "code": ci})
    df = pd.DataFrame(rows)
    df["cls"] = _ordered(df.pop("code"))
    return df


def test_spatial_term_is_penalised_away_without_spatial_structure(path_graph):
    df = _three_units()
    spec = ModelSpec("cls", parametric=[ParametricTerm("x")])
    spec_geo = add_term(spec, SmoothTerm("id", basis="mrf", neighbors=path_graph))

    gam = fit(spec, df)
    geo = fit(spec_geo, df)

    assert spec.labels == ["x"]
    assert geo.edf_["s(id)"] < 0.5
    assert geo.sp_["s(id)"] > 1.0
    assert gam.coef_["x"] > 0
    assert aic_difference(gam, geo) > -1e-4

    est = geo.smooth_estimate("s(id)")
    assert list(est["id"]) == ["1", "2", "3"]
    assert est["fit"].abs().max() < 1e-3


def test_population_prediction_excludes_spatial_term(path_graph):
    df = _three_units()
    spec = add_term(ModelSpec("cls", parametric=[ParametricTerm("x")]),
                    SmoothTerm("id", basis="mrf", neighbors=path_graph))
    geo = fit(spec, df)
    grid = pd.DataFrame({"x": np.linspace(-2, 2, 9), "id": "placeholder"})
    prob = geo.predict(grid, exclude="s(id)")
    np.testing.assert_allclose(prob.sum(axis=1), 1.0, atol=1e-6)
    # increasing x moves mass towards the high class
    assert prob[-1, 2] > prob[0, 2]


def test_unit_missing_from_graph_is_fatal(path_graph):
    df = _three_units()
    df.loc[df["id"] == "3", "id"] = "99"
    spec = ModelSpec("cls", parametric=[ParametricTerm("x")],
                     smooths=[SmoothTerm("id", basis="mrf", neighbors=path_graph)])
    with pytest.raises(AlignmentError, match="99"):
        fit(spec, df)


def test_unfinished_smoothing_parameter_search_is_fatal(smooth_spec, smooth_data):
    with pytest.raises(ConvergenceError, match="Smoothing parameter search did not converge"):
        fit(smooth_spec, smooth_data, control={"maxit": 1})


def test_missing_numeric_covariate_at_prediction_is_fatal():
    model = fit(ModelSpec("cls", parametric=[ParametricTerm("x")]), _three_units())
    with pytest.raises(ValueError, match="'x'.*row 0"):
        model.predict(pd.DataFrame({"x": [np.nan, 0.0]}))
    prob = model.predict(pd.DataFrame({"x": [0.0]}))
    np.testing.assert_allclose(prob.sum(axis=1), 1.0, atol=1e-6)
