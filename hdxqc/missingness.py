"""
Missing value handling for the HDX-MS QC pipeline.

Classifies peptides as missing not at random (MNAR), filters them, and
imputes the remaining gaps in the uptake matrix with zero, median, KNN or
MinDet strategies.
"""

import copy

import pandas as pd

from .utils import _check_data, _qc_parameter


def is_missing_at_random(data, threshold=None, filter=True):
    """
    Flag peptides whose missingness is not at random.

    A peptide is flagged when its number of missing uptake values exceeds
    `threshold`. Missing values at the zero timepoint are expected (uptake
    is zero there, not unknown), which is why MNAR peptides are removed
    before zero imputation.

    Parameters
    ----------
    data : dict
        Output from prep_hdx() or build_hdx_data().
    threshold : float, optional
        Maximum number of missing values tolerated per peptide. Defaults to
        qc_parameters.missing_threshold from the config, else half the
        number of sample columns.
    filter : bool, optional
        Remove flagged peptides (default: True).

    Returns
    -------
    dict
        Updated data dictionary. data['df'] gains an 'mnar' column (0/1).

    Example
    -------
    >>> data = prep_hdx('config/hdx_experiment.yaml')
    >>> data = is_missing_at_random(data)
    """
    _check_data(data)

    print("\n" + "="*80)
    print("MISSINGNESS CLASSIFICATION")
    print("="*80)

    assay = data['assay']
    na_count = assay.isna().sum(axis=1)

    if threshold is None:
        threshold = _qc_parameter(data, 'missing_threshold', assay.shape[1] / 2)

    mnar = (na_count > threshold).astype(int)

    df = data['df'].copy()
    df['mnar'] = mnar.reindex(df.index).fillna(0).astype(int)

    print(f"\nThreshold: more than {threshold:g} of {assay.shape[1]} values missing")
    print(f"  > {int(mnar.sum())} of {len(mnar)} peptides missing not at random")

    data_updated = copy.copy(data)
    data_updated['df'] = df

    if filter:
        keep = mnar.index[mnar == 0]
        data_updated['df'] = df.loc[keep].copy()
        data_updated['wide'] = data['wide'].loc[keep].copy()
        data_updated['assay'] = assay.loc[keep].copy()
        print(f"  > Number of peptides filtered: {int(mnar.sum())}")
        print(f"    Remaining: {len(keep)} peptides")

    if 'metadata' in data:
        metadata = data['metadata'].copy()
        metadata['n_peptides'] = len(data_updated['assay'])
        metadata['mnar_threshold'] = threshold
        metadata['n_mnar'] = int(mnar.sum())
        data_updated['metadata'] = metadata

    print("="*80 + "\n")

    return data_updated


def impute_hdx(data, method=None):
    """
    Impute missing values in the uptake matrix.

    Imputation options:
    - 'zero': Replace with zero (default, missing uptake means no uptake)
    - 'median': Median imputation per sample
    - 'knn': K-nearest neighbors (k=5)
    - 'mindet': Minimum detection (min - 1.8*std per sample)

    Parameters
    ----------
    data : dict
        Output from is_missing_at_random().
    method : str, optional
        Imputation method. Defaults to qc_parameters.imputation from the
        config, else 'zero'.

    Returns
    -------
    dict
        Updated data dictionary with an imputed data['assay']. The uptake
        field of data['wide'] is updated to match.

    Example
    -------
    >>> data = is_missing_at_random(data)
    >>> data = impute_hdx(data, method='zero')
    """
    _check_data(data)

    print("\n" + "="*80)
    print("IMPUTATION")
    print("="*80)

    if method is None:
        method = _qc_parameter(data, 'imputation', 'zero')

    assay = data['assay'].copy()
    missing_before = int(assay.isna().sum().sum())

    print(f"\nImputation: {method}")
    print(f"Processing {len(assay)} peptides across {assay.shape[1]} samples")

    if method == 'zero':
        assay = assay.fillna(0)
        print(f"  > Zero imputation applied")

    elif method == 'median':
        assay = assay.fillna(assay.median())
        print(f"  > Median imputation applied")

    elif method == 'knn':
        from sklearn.impute import KNNImputer
        imputer = KNNImputer(n_neighbors=5, keep_empty_features=True)
        assay = pd.DataFrame(imputer.fit_transform(assay),
                             index=assay.index, columns=assay.columns)
        print(f"  > KNN imputation applied (k=5)")

    elif method == 'mindet':
        for col in assay.columns:
            if assay[col].isna().any():
                valid_values = assay[col].dropna()
                if len(valid_values) > 0:
                    std_val = valid_values.std() if len(valid_values) > 1 else 0.0
                    impute_val = valid_values.min() - 1.8 * std_val
                    assay[col] = assay[col].fillna(impute_val)
        print(f"  > MinDet imputation applied (min - 1.8*std per sample)")

    else:
        raise ValueError(
            f"Unknown imputation '{method}'. Options: 'zero', 'median', 'knn', 'mindet'"
        )

    missing_after = int(assay.isna().sum().sum())
    print(f"    Missing values: {missing_before} -> {missing_after}")

    uptake = data['columns']['uptake']
    wide = data['wide'].copy()
    for col in assay.columns:
        wide[(uptake,) + tuple(col)] = assay[col].values

    data_updated = copy.copy(data)
    data_updated['assay'] = assay
    data_updated['wide'] = wide
    data_updated['imputation'] = {'method': method, 'n_imputed': missing_before - missing_after}

    print("="*80 + "\n")

    return data_updated
