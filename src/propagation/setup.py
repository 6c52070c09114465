"""Reading propagation settings and parameters from dictionaries and YAML."""

from pathlib import Path
from typing import Any, Dict, Tuple, Union

import pint
import yaml

from propagation.config import IntegratorConfig

# Integrator settings expressed as durations
TIME_SETTINGS = ("step", "max_step", "first_step")


def read_param_values(params_dict, parent_key="", sep="_"):
    """
    Flatten a nested parameter dictionary by concatenating keys.

    Parameters
    ----------
    params_dict : dict
        Nested dictionary of parameters. Leaf nodes are either plain
        values or dicts with a 'value' key and optional 'units', 'name',
        'desc' keys.
    parent_key : str, optional
        Prefix for keys (used in recursion), by default ''
    sep : str, optional
        Separator between nested keys, by default '_'

    Returns
    -------
    dict
        Flat dictionary of parameter dicts, each with a 'value' and the
        other fields of the original leaf. Plain values get
        ``units=None``.

    Examples
    --------
    >>> params = {
    ...     'spacecraft': {
    ...         'mass': {'value': 1200.0, 'units': 'kg'},
    ...         'drag_area': {'value': 4.5, 'units': 'm**2',
    ...                       'desc': 'Cross-section used for drag'},
    ...     },
    ...     'central_body': {'mu': 3.986004415e14},
    ... }
    >>> result = read_param_values(params)
    >>> result['spacecraft_mass']
    {'value': 1200.0, 'units': 'kg'}
    >>> result['central_body_mu']
    {'value': 398600441500000.0, 'units': None}

    See Also
    --------
    read_param_values_pint : Converts units to pint unit objects
    """
    items = []

    for key, value in params_dict.items():
        new_key = f"{parent_key}{sep}{key}" if parent_key else key

        if isinstance(value, dict):
            if "value" in value:
                # leaf with value, units and any descriptive fields
                items.append((new_key, dict(value)))
            else:
                items.extend(
                    read_param_values(
                        value, parent_key=new_key, sep=sep
                    ).items()
                )
        else:
            items.append((new_key, {"value": value, "units": None}))

    return dict(items)


def read_param_values_pint(params_dict, ureg=None, parent_key="", sep="_"):
    """
    Flatten a nested parameter dictionary and convert units to pint.

    Parameters
    ----------
    params_dict : dict
        Nested dictionary of parameters, see :func:`read_param_values`
    ureg : pint.UnitRegistry, optional
        Unit registry used to parse unit strings. If None, a new
        registry is created.
    parent_key : str, optional
        Prefix for keys (used in recursion), by default ''
    sep : str, optional
        Separator between nested keys, by default '_'

    Returns
    -------
    dict
        Flat dictionary as returned by :func:`read_param_values`, with
        'units' converted to a pint Unit (or None if not given).

    Examples
    --------
    >>> ureg = pint.UnitRegistry()
    >>> result = read_param_values_pint(
    ...     {'spacecraft': {'mass': {'value': 1200.0, 'units': 'kg'}}}, ureg
    ... )
    >>> result['spacecraft_mass']
    {'value': 1200.0, 'units': <Unit('kilogram')>}
    """
    if ureg is None:
        ureg = pint.UnitRegistry()
    params_flat = read_param_values(
        params_dict, parent_key=parent_key, sep=sep
    )

    for value in params_flat.values():
        units = value.get("units")
        value["units"] = ureg(units).units if units is not None else None

    return params_flat


def to_seconds(value, ureg) -> float:
    """Convert a duration setting to seconds.

    Plain numbers are taken as seconds; ``{'value': v, 'units': u}``
    dicts are converted with pint.
    """
    if isinstance(value, dict):
        quantity = ureg.Quantity(value["value"], value.get("units") or "s")
        return float(quantity.to(ureg.second).magnitude)
    return float(value)


def load_propagation_settings(
    filename: Union[str, Path], ureg=None
) -> Tuple[IntegratorConfig, Dict[str, Any]]:
    """Load integrator settings and model parameters from a YAML file.

    The file has an ``integrator`` section, whose entries are the fields
    of :class:`IntegratorConfig`, and an optional ``parameters`` section
    of nested parameter values::

        integrator:
          method: RK4
          step: {value: 0.5, units: minute}
        parameters:
          spacecraft:
            mass: {value: 1200.0, units: kg}

    Parameters
    ----------
    filename : str or Path
        YAML file to read
    ureg : pint.UnitRegistry, optional
        Unit registry used for conversions

    Returns
    -------
    config : IntegratorConfig
        Integrator configuration, durations converted to seconds
    params : dict
        Flattened parameters with pint units

    Raises
    ------
    ValueError
        If the integrator section is missing or has unknown keys.
    """
    if ureg is None:
        ureg = pint.UnitRegistry()
    with open(filename, "r") as f:
        settings = yaml.safe_load(f) or {}

    if "integrator" not in settings:
        raise ValueError(f"{filename}: missing 'integrator' section")
    integrator = dict(settings["integrator"])
    known = set(IntegratorConfig.__dataclass_fields__)
    unknown = sorted(set(integrator) - known)
    if unknown:
        raise ValueError(
            f"{filename}: unknown integrator settings {unknown}, "
            f"expected some of {sorted(known)}"
        )
    for key in TIME_SETTINGS:
        if integrator.get(key) is not None:
            integrator[key] = to_seconds(integrator[key], ureg)
    for key in ("rtol", "atol"):
        # YAML reads exponents without a dot (1e-10) as strings
        if key in integrator:
            integrator[key] = float(integrator[key])

    params = read_param_values_pint(settings.get("parameters", {}), ureg)
    return IntegratorConfig(**integrator), params
