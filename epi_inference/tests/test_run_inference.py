import pandas as pd
import pytest

from epi_inference.run_inference import main, parse_args


def test_parse_args_defaults():
    args = parse_args(['pfilter'])
    assert args.command == 'pfilter'
    assert args.n_particles == 1000
    assert args.values == []


def test_bad_override_is_a_usage_error():
    with pytest.raises(SystemExit):
        parse_args(['pfilter', '--set', 'Beta'])


def test_pfilter_command(tmp_path, capsys):
    out = tmp_path / "pf.csv"
    code = main(['pfilter', '--n-particles', '50', '--n-replicates', '2',
                 '--set', 'Beta=2.5', '--out', str(out)])
    assert code == 0
    frame = pd.read_csv(out)
    assert frame.loc[0, 'Beta'] == 2.5
    assert frame.loc[0, 'kind'] == 'pfilter'
    assert len(capsys.readouterr().out.split()) == 2


def test_mif2_command_writes_trace(tmp_path):
    trace = tmp_path / "trace.csv"
    code = main(['mif2', '--n-mif', '2', '--n-particles', '40', '--n-eval', '2',
                 '--n-eval-particles', '40', '--fix', 'rho', '--trace', str(trace)])
    assert code == 0
    frame = pd.read_csv(trace)
    assert frame['iteration'].tolist() == [0, 1, 2]
    assert (frame['rho'] == 0.9).all()


def test_search_command(tmp_path):
    out = tmp_path / "search.csv"
    code = main(['search', '--mode', 'local', '--n-runs', '2', '--n-mif', '1',
                 '--n-particles', '30', '--n-eval', '2', '--n-eval-particles', '30',
                 '--workers', '1', '--out', str(out)])
    assert code == 0
    assert len(pd.read_csv(out)) == 2


def test_pmcmc_command(tmp_path):
    out = tmp_path / "chain.csv"
    code = main(['pmcmc', '--n-iter', '5', '--n-particles', '30', '--out', str(out)])
    assert code == 0
    chain = pd.read_csv(out)
    assert len(chain) == 6
    assert {'Beta', 'mu_I', 'rho', 'loglik', 'accepted'} <= set(chain.columns)


def test_unknown_parameter_fails_cleanly():
    assert main(['pfilter', '--n-particles', '10', '--n-replicates', '1', '--set', 'gamma=1']) == 1
