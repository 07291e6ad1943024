"""
Radio source estimation examples.

Examples:
    - Joint estimation from clean ranging and RSSI readings
    - Robust estimation with outliers (RANSAC, LMedS, MSAC, PROSAC, PROMedS)
    - RSSI-only estimation of position, power and path-loss exponent
    - Monte Carlo comparison of joint and robust estimation
"""
